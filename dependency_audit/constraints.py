"""
Single version constraint clauses such as ``>=1.2`` or ``~=2.2``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Union

from .versions import BaseVersion, Version, parse_version, public_release, series


logger = logging.getLogger(__name__)

OPERATORS = ("<", "<=", "==", "!=", ">=", ">", "~=", "===")
DETERMINATIVE_OPERATORS = ("==", "===")


@dataclass(frozen=True)
class Constraint:
    """An ``(operator, version)`` test on candidate versions."""

    operator: str
    version: str

    def __post_init__(self) -> None:
        if self.operator not in OPERATORS:
            raise ValueError(f"Unknown constraint operator {self.operator!r}")

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"

    @property
    def determinative(self) -> bool:
        """True when the constraint pins exactly one version."""
        return self.operator in DETERMINATIVE_OPERATORS

    def satisfied_by(self, candidate: Union[str, BaseVersion], strict: bool = True) -> bool:
        """Test ``candidate`` against this constraint.

        With ``strict=False`` the pinning operators (``==`` and ``===``)
        accept every candidate.
        """
        if not strict and self.determinative:
            return True

        if self.operator == "===":
            return self.version == str(candidate)

        required = parse_version(self.version)
        version = parse_version(candidate)

        if self.operator == "~=":
            if not isinstance(required, Version):
                logger.debug("Compatible-release clause on non-standard version %s", self.version)
                return version == required
            if not isinstance(version, Version):
                return False
            return version >= required and series(version) == series(required)

        if (
            self.operator in ("==", "!=")
            and isinstance(required, Version)
            and required.is_wildcard
            and isinstance(version, Version)
        ):
            # Prefix matching looks at the epoch and release segments only.
            version = public_release(version)

        result = version.compare(required)
        if self.operator == "<":
            return result < 0
        if self.operator == "<=":
            return result <= 0
        if self.operator == "==":
            return result == 0
        if self.operator == "!=":
            return result != 0
        if self.operator == ">=":
            return result >= 0
        return result > 0


def satisfies_all(
    constraints: Iterable[Constraint], candidate: Union[str, BaseVersion], strict: bool = True
) -> bool:
    """True when ``candidate`` satisfies every constraint."""
    return all(c.satisfied_by(candidate, strict=strict) for c in constraints)
