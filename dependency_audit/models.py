"""
Core data models for dependency auditing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from .versions import AnyVersion


@dataclass(frozen=True)
class Release:
    """A published package version with its release date."""

    version: AnyVersion
    released_at: datetime
    licenses: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class CVERecord:
    """A vulnerability applicable to a package version."""

    id: str
    vendors: Optional[FrozenSet[str]] = None
    score: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "vendors": sorted(self.vendors) if self.vendors is not None else None,
            "score": self.score,
        }


@dataclass(frozen=True)
class LicenseDescription:
    """License text plus a note on how it changes at the recommended version."""

    text: str
    update_info: Optional[str] = None

    def __str__(self) -> str:
        if self.update_info:
            return f"{self.text} ({self.update_info})"
        return self.text


@dataclass
class ReportRow:
    """One package's row in the audit report."""

    name: str
    current_version: Optional[str] = None
    age_days: Optional[int] = None
    latest_version: Optional[str] = None
    latest_released: Optional[datetime] = None
    recommended_version: Optional[str] = None
    license: Optional[str] = None
    license_update_note: Optional[str] = None
    changelog: Optional[str] = None
    homepage: Optional[str] = None
    obsolescence: Optional[str] = None
    cves: List[Dict] = field(default_factory=list)
