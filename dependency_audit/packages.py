"""
Per-package accumulation of requirements and derived audit attributes.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from packaging.utils import canonicalize_name

from .caching import DataCache, cache_key, register_cache
from .constraints import Constraint, satisfies_all
from .context import AuditContext
from .errors import AuditError
from .grammar import ConstraintSet, DirectReference, ParsedRequirement
from .interfaces import RegistryClient
from .models import LicenseDescription, Release
from .recommendation import (
    MIN_RELEASED_DAYS,
    MIN_STABLE_DAYS,
    classify_obsolescence,
    days_between_current_and_recommended,
    find_release,
    recommend_version,
    release_age,
)
from .time_utils import parse_timestamp
from .versions import AnyVersion, BaseVersion, Version, parse_version


logger = logging.getLogger(__name__)

VERSIONS_CACHE = register_cache("py-versions-cache")
INFO_CACHE = register_cache("py-info-cache")
RELEASE_CACHE = register_cache("py-release-cache")
DIRECT_CACHE = register_cache("py-direct-cache")

UNKNOWN_DIRECT_VERSION = "0a0.dev0"

_UNSET = object()


def _release_sort_key(release: Release) -> Tuple[bool, BaseVersion]:
    # Structured versions first (newest first), opaque strings after them.
    return (isinstance(release.version, Version), release.version)


class PackageRecord:
    """Everything known about one required package.

    A record is created for the first sighting of a package in a manifest,
    merged with later sightings through :meth:`incorporate`, and then
    resolved once.  Registry data is fetched lazily through the context's
    caches.
    """

    def __init__(
        self,
        name: Optional[str] = None,
        constraints: Iterable[Constraint] = (),
        url: Optional[str] = None,
        install: bool = False,
        extras: Iterable[str] = (),
        registry: Optional[RegistryClient] = None,
        context: Optional[AuditContext] = None,
    ) -> None:
        if name is None and url is None:
            raise ValueError("At least one of name or url must be specified")
        self._name = name
        self.constraints: List[Constraint] = list(constraints)
        self.url = url
        self.install = install
        self.extras = tuple(extras)
        self.registry = registry
        self.context = context or AuditContext()
        self.current_version: Optional[AnyVersion] = None
        self.min_released_days = MIN_RELEASED_DAYS
        self.min_stable_days = MIN_STABLE_DAYS

        self._releases: Optional[List[Release]] = None
        self._recommended = _UNSET
        self._metadata: Optional[Dict] = None
        self._direct_metadata: Optional[Dict] = None

        self._adopt_pinned_version()

    @classmethod
    def from_requirement(
        cls,
        requirement: ParsedRequirement,
        install: bool,
        registry: Optional[RegistryClient] = None,
        context: Optional[AuditContext] = None,
    ) -> "PackageRecord":
        """Build a record from a parsed manifest entry."""
        if isinstance(requirement, DirectReference):
            return cls(
                name=requirement.name,
                url=requirement.url,
                install=install,
                extras=requirement.extras,
                registry=registry,
                context=context,
            )
        if isinstance(requirement, ConstraintSet):
            return cls(
                name=requirement.name,
                constraints=requirement.constraints,
                install=install,
                extras=requirement.extras,
                registry=registry,
                context=context,
            )
        raise TypeError(f"Unsupported requirement type {type(requirement).__name__}")

    def __repr__(self) -> str:
        return f"<PackageRecord {self.name or self.url!r}>"

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def canonical_name(self) -> Optional[str]:
        return canonicalize_name(self._name) if self._name is not None else None

    @property
    def direct_reference(self) -> bool:
        """Was the package required through a URL?"""
        return self.url is not None

    def satisfied_by(self, version, strict: bool = True) -> bool:
        """Test a version against every accumulated constraint."""
        return satisfies_all(self.constraints, version, strict=strict)

    def incorporate(self, other: "PackageRecord") -> None:
        """Merge the requirements of ``other`` (same package) into this record."""
        if other.canonical_name != self.canonical_name:
            raise ValueError(f"Cannot incorporate requirements for {other.name} into {self.name}")
        self.constraints.extend(other.constraints)
        self.install = self.install or other.install
        if self.url is None and other.url is not None:
            self.url = other.url
        self.extras = tuple(sorted(set(self.extras) | set(other.extras)))
        self._adopt_pinned_version()

    def _adopt_pinned_version(self) -> None:
        if self.current_version is not None:
            return
        pinned = sorted(
            (parse_version(c.version) for c in self.constraints if c.determinative),
            key=lambda v: (isinstance(v, Version), v),
        )
        if pinned:
            # Highest pin, so the merge order of constraints does not matter.
            self.current_version = pinned[-1]

    # -- resolution ---------------------------------------------------------

    def resolve_name(self) -> Optional[str]:
        """Determine the name of a direct reference from its package metadata."""
        if not self.direct_reference:
            return self._name
        declared = self.direct_metadata().get("name")
        if not declared:
            logger.warning("Package at %s does not declare a name", self.url)
        elif self._name is None:
            self._name = declared
        elif canonicalize_name(declared) != self.canonical_name:
            logger.warning(
                "Requirement entry for %s points to a package named %s", self._name, declared
            )
        return self._name

    def resolve_version(self) -> Optional[AnyVersion]:
        """Determine the version that would be installed for this record."""
        if self.current_version is not None:
            return self.current_version

        try:
            if self.direct_reference:
                declared = self.direct_metadata().get("version") or UNKNOWN_DIRECT_VERSION
                self.current_version = parse_version(declared)
            else:
                logger.info("Resolving current version of %s", self.name)
                for release in self.releases:
                    if self.satisfied_by(release.version):
                        self.current_version = release.version
                        break
        except AuditError as e:
            logger.warning("Could not resolve a version of %s: %s", self.name or self.url, e)
            return None

        if self.current_version is None:
            logger.warning(
                "No release of %s satisfies %s",
                self.name,
                ", ".join(str(c) for c in self.constraints) or "(no constraints)",
            )
        else:
            logger.info("    %s -> %s", self.name, self.current_version)
        return self.current_version

    # -- registry data ------------------------------------------------------

    def _registry(self) -> RegistryClient:
        if self.registry is None:
            raise AuditError(f"No registry client configured for {self.name}")
        return self.registry

    def direct_metadata(self) -> Dict:
        """Name and version declared by the package behind :attr:`url`."""
        if self._direct_metadata is None:
            cache = DataCache(self.context, DIRECT_CACHE)
            url = self.url
            self._direct_metadata = cache.apply(
                cache_key(url), lambda: self._registry().get_direct_metadata(url)
            )
        return self._direct_metadata

    def metadata(self) -> Dict:
        """Homepage, license and changelog information for the package."""
        if self._metadata is None:
            cache = DataCache(self.context, INFO_CACHE)
            name = self.name
            self._metadata = cache.apply(
                cache_key(name), lambda: self._registry().get_metadata(name)
            )
        return self._metadata

    @property
    def releases(self) -> List[Release]:
        """Final releases sorted newest first; opaque versions last."""
        if self._releases is None:
            cache = DataCache(self.context, VERSIONS_CACHE)
            name = self.name
            entries = cache.apply(cache_key(name), lambda: self._registry().get_versions(name))
            releases = []
            for entry in entries:
                released_at = parse_timestamp(entry.get("release_timestamp"))
                version = parse_version(entry.get("version", ""))
                if released_at is None or version.is_prerelease:
                    continue
                licenses = entry.get("license_list")
                releases.append(Release(
                    version=version,
                    released_at=released_at,
                    licenses=tuple(licenses) if licenses is not None else None,
                ))
            releases.sort(key=_release_sort_key, reverse=True)
            self._releases = releases
        return self._releases

    # -- derived attributes -------------------------------------------------

    @property
    def latest_version(self) -> Optional[AnyVersion]:
        return self.releases[0].version if self.releases else None

    @property
    def latest_released(self):
        return self.releases[0].released_at if self.releases else None

    @property
    def recommended_version(self) -> Optional[AnyVersion]:
        """Version recommended by the release-age policy, or None."""
        if self._recommended is _UNSET:
            self._recommended = recommend_version(
                self.releases,
                self.constraints,
                now=self.context.now(),
                current=self.current_version,
                min_released_days=self.min_released_days,
                min_stable_days=self.min_stable_days,
            )
        return self._recommended

    @property
    def age(self) -> Optional[int]:
        """Age in days of the current version."""
        return release_age(self.releases, self.current_version, self.context.now())

    def days_between_current_and_recommended(self) -> Optional[int]:
        return days_between_current_and_recommended(
            self.releases, self.current_version, self.recommended_version
        )

    @property
    def obsolescence(self) -> Optional[str]:
        if not isinstance(self.current_version, Version):
            return None
        recommended = self.recommended_version
        if not isinstance(recommended, Version):
            return None
        return classify_obsolescence(
            self.current_version,
            recommended,
            self.days_between_current_and_recommended(),
        )

    @property
    def homepage(self) -> Optional[str]:
        return self.metadata().get("homepage")

    @property
    def changelog(self) -> Optional[str]:
        metadata = self.metadata()
        return metadata.get("changelog_url") or metadata.get("homepage")

    @property
    def license(self) -> LicenseDescription:
        """License of the current version, noting changes at the recommended one."""
        if self.current_version is None:
            return LicenseDescription(self.metadata().get("license") or "")

        current = self._licenses_for(self.current_version)
        recommended_version = self.recommended_version
        if recommended_version is None or recommended_version == self.current_version:
            recommended = current
        else:
            recommended = self._licenses_for(recommended_version)

        now_included = [lic for lic in recommended if lic not in current]
        now_excluded = [lic for lic in current if lic not in recommended]
        current_text = " or ".join(current)

        if not now_included and not now_excluded:
            return LicenseDescription(current_text)
        if now_excluded:
            return LicenseDescription(
                current_text,
                update_info=f"rec'd ver. doesn't allow {' or '.join(now_excluded)}",
            )
        if not current:
            return LicenseDescription(f"Rec'd ver.: {' or '.join(now_included)}")
        return LicenseDescription(
            current_text,
            update_info=f"or {' or '.join(now_included)} on upgrade to rec'd ver.",
        )

    def _licenses_for(self, version: AnyVersion) -> List[str]:
        release = find_release(self.releases, version)
        if release is not None and release.licenses is not None:
            return list(release.licenses)

        cache = DataCache(self.context, RELEASE_CACHE)
        name, version_text = self.name, str(version)
        info = cache.apply(
            cache_key(name, version_text),
            lambda: self._registry().get_release_metadata(name, version_text),
        )
        license_text = info.get("license")
        return [license_text] if license_text else []
