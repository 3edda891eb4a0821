"""
Vulnerability lookup against the NVD CPE-match feed.

Each feed item carries a configuration tree of AND/OR nodes whose leaves are
CPE match patterns.  :class:`Applicability` evaluates that tree for a single
package and version; items whose configuration schema is not recognised are
passed through unfiltered.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from .caching import DataCache, register_cache
from .context import AuditContext
from .errors import ConfigError
from .interfaces import VulnDBClient
from .models import CVERecord


logger = logging.getLogger(__name__)

MIN_GAP_SECONDS = 5
POLICY_FILE = ".dependency-audit-cves.py"
CVE_CACHE = register_cache("cve-data")
SCHEMA_VERSION = "4.0"

_RANGE_FIELDS = (
    "versionStartIncluding",
    "versionStartExcluding",
    "versionEndIncluding",
    "versionEndExcluding",
)
_LEADING_DIGITS = re.compile(r"\d+")


def cpe_match_string(package: str, version: str = "*") -> str:
    return f"cpe:2.3:a:*:{package.lower()}:{version}:*:*:*:*:*:*:*"


def _comparable(version: str) -> List[int]:
    # Integer prefix of each dot-separated segment; non-numeric segments are 0.
    parts = []
    for segment in version.split("."):
        match = _LEADING_DIGITS.match(segment)
        parts.append(int(match.group()) if match else 0)
    return parts


def version_compare(a: str, b: str) -> int:
    """Compare dot-separated version strings segment by segment."""
    left, right = _comparable(a), _comparable(b)
    return (left > right) - (left < right)


@dataclass(frozen=True)
class CPEMatch:
    """One CPE match pattern (a leaf of a configuration tree)."""

    vendor: str
    product: str
    version: str
    update: Optional[str] = None
    vulnerable: bool = False
    start_including: Optional[str] = None
    start_excluding: Optional[str] = None
    end_including: Optional[str] = None
    end_excluding: Optional[str] = None

    @classmethod
    def from_dict(cls, pattern: Dict[str, Any]) -> "CPEMatch":
        parts = pattern["cpe23Uri"].split(":")
        vendor, product, version = parts[3:6]
        update = parts[6] if len(parts) > 6 else None
        return cls(
            vendor=vendor,
            product=product,
            version=version,
            update=update,
            vulnerable=bool(pattern.get("vulnerable")),
            start_including=pattern.get("versionStartIncluding"),
            start_excluding=pattern.get("versionStartExcluding"),
            end_including=pattern.get("versionEndIncluding"),
            end_excluding=pattern.get("versionEndExcluding"),
        )

    @property
    def blocking_key(self) -> str:
        return f"{self.vendor}:{self.product}"


@dataclass
class ConfigNode:
    """An AND/OR node holding either child nodes or CPE match leaves."""

    operator: str = "OR"
    children: List["ConfigNode"] = field(default_factory=list)
    matches: List[CPEMatch] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigNode":
        root = cls(operator=data.get("operator", "OR"))
        stack = [(data, root)]
        while stack:
            raw, node = stack.pop()
            children = raw.get("children")
            if children:
                for raw_child in children:
                    child = cls(operator=raw_child.get("operator", "OR"))
                    node.children.append(child)
                    stack.append((raw_child, child))
            else:
                node.matches = [CPEMatch.from_dict(p) for p in raw.get("cpe_match", [])]
        return root


class Applicability:
    """Evaluates a schema 4.0 configuration tree for one package."""

    def __init__(
        self,
        package: str,
        nodes: Iterable[ConfigNode],
        blocked_products: Iterable[str] = (),
    ) -> None:
        self.package = package.lower()
        self.nodes = list(nodes)
        self.blocked_products = frozenset(blocked_products)

    @classmethod
    def from_configurations(
        cls, package: str, configurations: Dict[str, Any], blocked_products: Iterable[str] = ()
    ) -> "Applicability":
        nodes = [ConfigNode.from_dict(n) for n in configurations.get("nodes", [])]
        return cls(package, nodes, blocked_products)

    def _is_package_match(self, match: CPEMatch) -> bool:
        return match.product.lower() == self.package

    def package_nodes(self) -> List[ConfigNode]:
        """Top-level nodes that can say something about this package."""
        return [
            node for node in self.nodes
            if node.children or any(self._is_package_match(m) for m in node.matches)
        ]

    def applies_to(self, version: str) -> bool:
        return any(self._evaluate(node, version) for node in self.package_nodes())

    def vendors(self) -> FrozenSet[str]:
        """Vendors of every vulnerable leaf naming this package."""
        found = set()
        stack = list(self.nodes)
        while stack:
            node = stack.pop()
            stack.extend(node.children)
            for match in node.matches:
                if match.vulnerable and self._is_package_match(match):
                    found.add(match.vendor)
        return frozenset(found)

    def _evaluate(self, root: ConfigNode, version: str) -> bool:
        results: Dict[int, bool] = {}
        stack: List[Tuple[ConfigNode, bool]] = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            test = all if node.operator == "AND" else any
            if not node.children:
                results[id(node)] = bool(node.matches) and test(
                    self.indicates_vulnerable(version, m) for m in node.matches
                )
            elif not expanded:
                stack.append((node, True))
                stack.extend((child, False) for child in node.children)
            else:
                results[id(node)] = test(results[id(child)] for child in node.children)
        return results[id(root)]

    def indicates_vulnerable(self, version: str, match: CPEMatch) -> bool:
        """Does the leaf ``match`` mark ``version`` of this package vulnerable?"""
        if not match.vulnerable:
            return False
        if match.blocking_key in self.blocked_products:
            return False
        if not self._is_package_match(match):
            return False
        if version == "*":
            return True
        if match.update not in (None, "*", "-"):
            # Prerelease-specific entries are ignored.
            return False
        if match.version != "*" and match.version == version:
            return True

        range_start = match.start_including or match.start_excluding
        if match.start_including is not None and version_compare(match.start_including, version) > 0:
            return False
        if match.start_excluding is not None and version_compare(match.start_excluding, version) >= 0:
            return False

        range_end = match.end_including or match.end_excluding
        if match.end_including is not None and version_compare(version, match.end_including) > 0:
            return False
        if match.end_excluding is not None and version_compare(version, match.end_excluding) >= 0:
            return False

        return bool(range_start or range_end)


OpaqueConfigurations = Any


def objectify_configurations(
    package: str, configurations: Any, blocked_products: Iterable[str] = ()
) -> Union[Applicability, OpaqueConfigurations]:
    """Wrap ``configurations`` in an :class:`Applicability` if its schema is known."""
    if isinstance(configurations, dict) and configurations.get("CVE_data_version") == SCHEMA_VERSION:
        return Applicability.from_configurations(package, configurations, blocked_products)
    return configurations


def _convert_nvd2_node(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "operator": node.get("operator", "OR"),
        "cpe_match": [
            dict(
                {"vulnerable": m.get("vulnerable", False), "cpe23Uri": m["criteria"]},
                **{k: m[k] for k in _RANGE_FIELDS if k in m},
            )
            for m in node.get("cpeMatch", [])
        ],
    }


def _convert_nvd2_item(cve: Dict[str, Any]) -> Dict[str, Any]:
    nodes = []
    for configuration in cve.get("configurations", []):
        converted = [_convert_nvd2_node(n) for n in configuration.get("nodes", [])]
        if len(converted) == 1 and "operator" not in configuration:
            nodes.extend(converted)
        else:
            nodes.append({"operator": configuration.get("operator", "OR"), "children": converted})

    score = None
    metrics = cve.get("metrics", {})
    for key in ("cvssMetricV31", "cvssMetricV30"):
        if metrics.get(key):
            score = metrics[key][0]["cvssData"]["baseScore"]
            break

    item = {
        "cve": {"CVE_data_meta": {"ID": cve["id"]}},
        "configurations": {"CVE_data_version": SCHEMA_VERSION, "nodes": nodes},
    }
    if score is not None:
        item["impact"] = {"baseMetricV3": {"cvssV3": {"baseScore": score}}}
    return item


def feed_items(feed: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Feed items in the schema 4.0 item shape."""
    if "result" in feed:
        return feed["result"]["CVE_Items"]
    if "vulnerabilities" in feed:
        return [_convert_nvd2_item(v["cve"]) for v in feed["vulnerabilities"]]
    raise ValueError("unrecognized vulnerability feed layout")


def _base_score(item: Dict[str, Any]) -> Optional[float]:
    return (((item.get("impact") or {}).get("baseMetricV3") or {}).get("cvssV3") or {}).get("baseScore")


def _run_policy_script(config_dir: Optional[Path]) -> Dict[str, Any]:
    if config_dir is None:
        return {}
    path = Path(config_dir) / POLICY_FILE
    if not path.exists():
        return {}

    try:
        completed = subprocess.run(
            [sys.executable, str(path)], capture_output=True, text=True, check=False
        )
    except OSError as e:
        raise ConfigError(f"{path} could not be run: {e}") from e
    if completed.returncode != 0:
        raise ConfigError(f"{path} did not exit cleanly (code {completed.returncode})")

    try:
        config = json.loads(completed.stdout)
    except ValueError as e:
        raise ConfigError(f"{path} did not output a JSON configuration") from e
    if not isinstance(config, dict):
        raise ConfigError(f"{path} did not output a JSON configuration")
    return config


def load_policy(context: AuditContext) -> Dict[str, Any]:
    """Vulnerability policy from the configured directory, loaded once per context."""
    if context.policy is None:
        try:
            context.policy = _run_policy_script(context.config_dir)
        except ConfigError as e:
            logger.warning("%s", e)
            context.policy = {}
    return context.policy


class VulnerabilityMatcher:
    """Find the CVE records that apply to a package version."""

    def __init__(self, client: VulnDBClient, context: Optional[AuditContext] = None) -> None:
        self.client = client
        self.context = context or AuditContext()
        self.cache = DataCache(self.context, CVE_CACHE)

    @property
    def blocked_products(self) -> FrozenSet[str]:
        return frozenset(load_policy(self.context).get("blockedProducts") or [])

    def _wait_for_rate_limit(self) -> None:
        last = self.context.last_query_time
        if last is None:
            return
        wait_time = MIN_GAP_SECONDS - (self.context.clock() - last)
        if wait_time > 0:
            logger.debug("Waiting %.1fs before the next vulnerability query", wait_time)
            self.context.sleep(wait_time)

    def _query(self, match_string: str) -> Dict[str, Any]:
        self._wait_for_rate_limit()
        try:
            return self.client.query(match_string)
        finally:
            self.context.last_query_time = self.context.clock()

    def fetch(self, package: str, version: str = "*") -> Dict[str, Any]:
        """Raw feed for ``package`` at ``version``, through the cache."""
        match_string = cpe_match_string(package, version)
        url = self.client.query_url(match_string)
        key = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return self.cache.apply(key, lambda: self._query(match_string))

    def get_for(self, package: str, version: Any = "*") -> List[CVERecord]:
        """CVE records (feed order) applying to ``version`` of ``package``.

        With the default ``version="*"`` every record naming the package is
        returned.
        """
        version = str(version)
        feed = self.fetch(package, version)
        blocked = self.blocked_products

        try:
            records = []
            for item in feed_items(feed):
                applicability = objectify_configurations(package, item.get("configurations"), blocked)
                if isinstance(applicability, Applicability):
                    if not applicability.applies_to(version):
                        continue
                    vendors = applicability.vendors()
                else:
                    vendors = None
                records.append(CVERecord(
                    id=item["cve"]["CVE_data_meta"]["ID"],
                    vendors=vendors,
                    score=_base_score(item),
                ))
            return records
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Malformed vulnerability feed for %s %s: %s", package, version, e)
            return []
