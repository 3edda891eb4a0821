"""
Command-line interface for the dependency audit tool.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from .caching import clear_caches
from .context import DEFAULT_CACHE_ROOT, AuditContext
from .cves import VulnerabilityMatcher
from .errors import reset_warnings
from .reader import ManifestReader
from .reporting import build_report_row, export_report_csv, print_summary, save_report_json
from .resolvers import NVDClient, PyPIRegistryClient


logger = logging.getLogger(__name__)

MANIFEST_NAMES = ("requirements.txt", "Packages")


def guess_manifest(directory: Path) -> Optional[Path]:
    """First conventional manifest file present in ``directory``."""
    for name in MANIFEST_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Audit the age, recommended upgrades and known CVEs of Python requirements"
    )

    parser.add_argument(
        "--requirements",
        default=None,
        help="Requirements manifest to audit. Default: requirements.txt or Packages in --dir"
    )

    parser.add_argument(
        "--dir",
        default=".",
        help="Project directory searched for a manifest. Default: current directory"
    )

    parser.add_argument(
        "--cache-dir",
        default=str(DEFAULT_CACHE_ROOT),
        help=f"Directory for cached registry and feed data. Default: {DEFAULT_CACHE_ROOT}"
    )

    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Ignore cached data and query every source again"
    )

    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Remove all cached data and exit"
    )

    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory holding the CVE policy script. Default: the manifest's directory"
    )

    parser.add_argument(
        "--no-cves",
        action="store_true",
        help="Skip the vulnerability feed lookup"
    )

    parser.add_argument(
        "--nvd-api-key",
        default=None,
        help="NVD API key. Default: the NVD_API_KEY environment variable"
    )

    parser.add_argument(
        "--output-dir",
        default="./output",
        help="Output directory for the report. Default: ./output"
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    context = AuditContext(
        cache_root=Path(args.cache_dir).expanduser(),
        caching_enabled=not args.no_cache,
    )

    if args.clear_cache:
        removed = clear_caches(context)
        logger.info("Removed %d cache directories under %s", len(removed), context.cache_root)
        return 0

    if args.requirements:
        manifest = Path(args.requirements)
    else:
        manifest = guess_manifest(Path(args.dir))
        if manifest is None:
            parser.error(f"No requirements manifest found in {args.dir}; use --requirements")
    if not manifest.is_file():
        parser.error(f"Manifest {manifest} does not exist")

    context.config_dir = Path(args.config_dir) if args.config_dir else manifest.parent
    reset_warnings()

    registry = PyPIRegistryClient(context=context)
    matcher = None
    if not args.no_cves:
        matcher = VulnerabilityMatcher(NVDClient(api_key=args.nvd_api_key), context)

    logger.info("Auditing %s", manifest)
    reader = ManifestReader(manifest, registry=registry, context=context)
    records = list(reader.iter_installed())

    rows = [
        build_report_row(record, matcher)
        for record in tqdm(records, desc="Auditing packages", unit="pkg")
    ]

    output_dir = Path(args.output_dir)
    print_summary(manifest, rows)
    json_file = save_report_json(rows, output_dir, manifest.stem)
    csv_file = export_report_csv(rows, output_dir, manifest.stem)
    logger.info("Report saved to: %s", json_file)
    logger.info("Table saved to: %s", csv_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
