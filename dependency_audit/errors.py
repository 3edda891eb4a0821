"""
Error taxonomy and de-duplicated warning helpers.
"""

from __future__ import annotations

import logging
from typing import Optional, Set, Tuple


logger = logging.getLogger(__name__)


class AuditError(Exception):
    """Base exception for dependency-audit."""


class ParseError(AuditError):
    """A manifest line could not be parsed."""


class RequirementParseError(ParseError):
    """A requirement line was rejected by the grammar."""

    def __init__(self, line: str, column: int, expected: str = "") -> None:
        self.line = line
        self.column = column
        self.expected = expected
        message = f"Cannot parse requirement at column {column + 1}: {line!r}"
        if expected:
            message += f" (expected {expected})"
        super().__init__(message)


class GrammarAmbiguity(ParseError):
    """A line parsed but does not map to a known requirement shape."""


class RegistryUnavailable(AuditError):
    """The package registry could not be queried."""


class VulnFeedUnavailable(AuditError):
    """The vulnerability feed could not be queried."""


class ConfigError(AuditError):
    """The policy configuration could not be loaded."""


_reported: Set[Tuple[str, str]] = set()


def warn_once(location: str, message: str, log: Optional[logging.Logger] = None) -> bool:
    """Log a warning unless the same (location, message) was already logged.

    Returns True when the warning was emitted.
    """
    key = (location, message)
    if key in _reported:
        return False
    _reported.add(key)
    (log or logger).warning("%s: %s", location, message)
    return True


def reset_warnings() -> None:
    """Forget previously reported warnings (start of a new run)."""
    _reported.clear()
