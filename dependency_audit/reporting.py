"""
Reporting and export utilities.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from .cves import VulnerabilityMatcher
from .errors import warn_once
from .models import ReportRow
from .packages import PackageRecord


logger = logging.getLogger(__name__)

ERROR_MARKER = "(error)"
NO_OBSOLESCENCE = "none"

REPORT_COLUMNS = [
    "name",
    "current_version",
    "age_days",
    "latest_version",
    "latest_released",
    "recommended_version",
    "license",
    "license_update_note",
    "changelog",
    "homepage",
    "obsolescence",
    "cves",
]


def _text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def build_report_row(
    record: PackageRecord, matcher: Optional[VulnerabilityMatcher] = None
) -> ReportRow:
    """Compute every report attribute of ``record``.

    Each attribute is computed on its own; a failure is logged once and
    leaves :data:`ERROR_MARKER` in that column only.
    """
    row = ReportRow(name=record.name or record.url)

    def attempt(fields: List[str], compute: Callable[[], Any]) -> None:
        try:
            values = compute()
            if len(fields) == 1:
                values = [values]
        except Exception as e:
            warn_once(f"{row.name}: {fields[0]}", str(e) or type(e).__name__, logger)
            values = [ERROR_MARKER] * len(fields)
        for name, value in zip(fields, values):
            setattr(row, name, value)

    def license_columns():
        description = record.license
        return description.text, description.update_info

    def cve_column():
        if matcher is None or record.current_version is None:
            return []
        return [cve.to_dict() for cve in matcher.get_for(record.name, record.current_version)]

    attempt(["current_version"], lambda: _text(record.current_version))
    attempt(["age_days"], lambda: record.age)
    attempt(["latest_version"], lambda: _text(record.latest_version))
    attempt(["latest_released"], lambda: record.latest_released)
    attempt(["recommended_version"], lambda: _text(record.recommended_version))
    attempt(["license", "license_update_note"], license_columns)
    attempt(["changelog"], lambda: record.changelog)
    attempt(["homepage"], lambda: record.homepage)
    attempt(["obsolescence"], lambda: record.obsolescence or NO_OBSOLESCENCE)
    attempt(["cves"], cve_column)
    return row


def _format_cves(cves: Any) -> Any:
    if not isinstance(cves, list):
        return cves
    parts = []
    for cve in cves:
        score = cve.get("score")
        parts.append(f"{cve['id']} ({score})" if score is not None else cve["id"])
    return ", ".join(parts)


def rows_to_dataframe(rows: Iterable[ReportRow]) -> pd.DataFrame:
    """Flatten report rows into a table, one package per row."""
    df = pd.DataFrame([asdict(row) for row in rows], columns=REPORT_COLUMNS)
    if not df.empty:
        df["cves"] = df["cves"].map(_format_cves)
        df["latest_released"] = df["latest_released"].map(
            lambda value: value.isoformat() if hasattr(value, "isoformat") else value
        )
    return df


def save_report_json(rows: Iterable[ReportRow], output_dir: Path, stem: str) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    report_file = output_dir / f"{stem}_audit.json"
    with open(report_file, 'w') as f:
        json.dump([asdict(row) for row in rows], f, indent=2, default=str)
    return report_file


def export_report_csv(rows: Iterable[ReportRow], output_dir: Path, stem: str) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    report_file = output_dir / f"{stem}_audit.csv"
    rows_to_dataframe(rows).to_csv(report_file, index=False)
    return report_file


def summarize(rows: Iterable[ReportRow]) -> Dict[str, Any]:
    rows = list(rows)
    obsolescence = Counter(
        row.obsolescence for row in rows if row.obsolescence not in (None, ERROR_MARKER)
    )
    return {
        "packages": len(rows),
        "obsolescence": dict(obsolescence),
        "vulnerable_packages": sum(1 for row in rows if isinstance(row.cves, list) and row.cves),
        "errors": sum(1 for row in rows if ERROR_MARKER in asdict(row).values()),
    }


def print_summary(manifest: Path, rows: Iterable[ReportRow]) -> None:
    summary = summarize(rows)
    logger.info("=" * 60)
    logger.info("AUDIT RESULTS")
    logger.info("=" * 60)
    logger.info("Manifest: %s", manifest)
    logger.info("Packages audited: %s", summary["packages"])
    logger.info("-" * 60)
    for level in ("severe", "moderate", "mild", NO_OBSOLESCENCE):
        logger.info("Obsolescence %-8s: %s", level, summary["obsolescence"].get(level, 0))
    logger.info("Packages with known CVEs: %s", summary["vulnerable_packages"])
    if summary["errors"]:
        logger.info("Packages with errors: %s", summary["errors"])
    logger.info("=" * 60)
