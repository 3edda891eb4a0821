#!/usr/bin/env python3
"""
Example script showing how to use the dependency-audit library.
"""

from pathlib import Path

from dependency_audit.context import AuditContext
from dependency_audit.cves import VulnerabilityMatcher
from dependency_audit.grammar import parse_requirement
from dependency_audit.reader import ManifestReader
from dependency_audit.reporting import build_report_row, save_report_json
from dependency_audit.resolvers import NVDClient, PyPIRegistryClient


def example_parse_requirement():
    """Example: Parse a single requirement line."""
    print("="*60)
    print("Example 1: Parse a requirement")
    print("="*60)

    requirement = parse_requirement('requests[security] (>=2.20, <3) ; python_version >= "3.8"')
    print(f"Name: {requirement.name}")
    print(f"Extras: {', '.join(requirement.extras)}")
    print(f"Constraints: {', '.join(str(c) for c in requirement.constraints)}")
    print(f"Marker: {requirement.marker}")


def example_audit_manifest(manifest: Path):
    """Example: Audit every installed package of a manifest."""
    print("\n" + "="*60)
    print("Example 2: Audit a manifest")
    print("="*60)

    context = AuditContext(config_dir=manifest.parent)
    registry = PyPIRegistryClient(context=context)
    matcher = VulnerabilityMatcher(NVDClient(), context)

    rows = []
    for record in ManifestReader(manifest, registry=registry, context=context).iter_installed():
        row = build_report_row(record, matcher)
        rows.append(row)
        print(
            f"{row.name}: current {row.current_version}, "
            f"recommended {row.recommended_version}, obsolescence {row.obsolescence}, "
            f"{len(row.cves) if isinstance(row.cves, list) else row.cves} CVEs"
        )

    report_file = save_report_json(rows, Path("./output/example2"), manifest.stem)
    print(f"\nReport saved to: {report_file}")


def example_package_cves():
    """Example: List every CVE recorded against a package."""
    print("\n" + "="*60)
    print("Example 3: CVEs for a package")
    print("="*60)

    matcher = VulnerabilityMatcher(NVDClient(), AuditContext())
    for cve in matcher.get_for("django", "3.2.0"):
        print(f"{cve.id}: score {cve.score}, vendors {sorted(cve.vendors or [])}")


if __name__ == "__main__":
    example_parse_requirement()
    example_audit_manifest(Path("requirements.txt"))
    example_package_cves()
