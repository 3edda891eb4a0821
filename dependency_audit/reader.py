"""
Requirements manifest reader.

Turns the lines of a requirements-style manifest (and the manifests it
includes) into :class:`PackageRecord` objects grouped by package.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from .context import AuditContext
from .errors import AuditError, ParseError
from .grammar import DirectReference, parse_manifest_line
from .interfaces import RegistryClient
from .packages import PackageRecord


logger = logging.getLogger(__name__)

_TRAILING_COMMENT = re.compile(r"\s+#.*$")
_INCLUDE = re.compile(r"^(?:-r|--requirement)(?:\s+|=)(.+)$")
_CONSTRAINT = re.compile(r"^(?:-c|--constraint)(?:\s+|=)(.+)$")
_EDITABLE = re.compile(r"^(?:-e|--editable)(?:\s+|=|$)")


def logical_lines(physical_lines) -> Iterator[Tuple[int, str]]:
    """Yield ``(line_number, text)`` for each logical manifest line.

    Comment lines are dropped before trailing comments are stripped, and
    both happen before backslash continuations are joined.  ``line_number``
    is the number of the physical line that completed the logical line.
    """
    pending = ""
    for number, raw in enumerate(physical_lines, start=1):
        line = raw.rstrip("\r\n")
        if line.startswith("#"):
            continue
        line = _TRAILING_COMMENT.sub("", line)
        if line.endswith("\\"):
            pending += line[:-1]
            continue
        text = (pending + line).strip()
        pending = ""
        if text:
            yield number, text
    if pending.strip():
        yield number, pending.strip()


class ManifestReader:
    """Read a requirements manifest into package records.

    With ``only_constrain=True`` the manifest is treated as a constraints
    file: its entries restrict versions but never mark a package for
    installation.
    """

    def __init__(
        self,
        path: Union[str, Path],
        only_constrain: bool = False,
        registry: Optional[RegistryClient] = None,
        context: Optional[AuditContext] = None,
    ) -> None:
        self.path = Path(path)
        self.only_constrain = only_constrain
        self.registry = registry
        self.context = context or AuditContext()

    def _child(self, target: str, only_constrain: bool) -> "ManifestReader":
        return ManifestReader(
            self.path.parent / target.strip(),
            only_constrain=only_constrain,
            registry=self.registry,
            context=self.context,
        )

    def _location(self, number: int) -> str:
        return f"{self.path}:{number}"

    def iter_constrained(self) -> Iterator[PackageRecord]:
        """Yield one record per requirement entry, following includes."""
        return self._iter_constrained(set())

    def _iter_constrained(self, ancestors: Set[Path]) -> Iterator[PackageRecord]:
        # ``ancestors`` holds the include chain leading here, so a file may be
        # included twice side by side but never from inside itself.
        resolved = self.path.resolve()
        if resolved in ancestors:
            logger.warning("Skipping %s: include cycle", self.path)
            return
        ancestors.add(resolved)
        try:
            yield from self._iter_lines(ancestors)
        finally:
            ancestors.discard(resolved)

    def _iter_lines(self, ancestors: Set[Path]) -> Iterator[PackageRecord]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.warning("Cannot read manifest %s: %s", self.path, e)
            return

        for number, line in logical_lines(lines):
            include = _INCLUDE.match(line)
            if include:
                if self.only_constrain:
                    logger.warning(
                        "%s: requirements include inside a constraints file", self._location(number)
                    )
                yield from self._child(include.group(1), self.only_constrain)._iter_constrained(ancestors)
                continue

            constraint = _CONSTRAINT.match(line)
            if constraint:
                yield from self._child(constraint.group(1), True)._iter_constrained(ancestors)
                continue

            if _EDITABLE.match(line):
                logger.warning("%s: editable requirements are not supported: %s", self._location(number), line)
                continue

            if line.startswith("-"):
                logger.warning("%s: ignoring option line %s", self._location(number), line)
                continue

            try:
                requirement = parse_manifest_line(line)
            except ParseError as e:
                logger.warning("%s: %s", self._location(number), e)
                continue

            if self.only_constrain and isinstance(requirement, DirectReference) and requirement.name is None:
                logger.warning(
                    "%s: URL without a package name ignored in constraints file", self._location(number)
                )
                continue

            yield PackageRecord.from_requirement(
                requirement,
                install=not self.only_constrain,
                registry=self.registry,
                context=self.context,
            )

    def read(self) -> List[PackageRecord]:
        """Group the manifest's records by canonical package name."""
        packages: Dict[str, PackageRecord] = {}
        for record in self.iter_constrained():
            if record.direct_reference:
                try:
                    record.resolve_name()
                except AuditError as e:
                    logger.warning("Cannot read package metadata for %s: %s", record.url, e)
            if record.name is None:
                continue

            existing = packages.get(record.canonical_name)
            if existing is None:
                packages[record.canonical_name] = record
            else:
                existing.incorporate(record)
        return list(packages.values())

    def iter_installed(self) -> Iterator[PackageRecord]:
        """Yield records marked for installation, with versions resolved."""
        for record in self.read():
            if not record.install:
                continue
            record.resolve_version()
            yield record
