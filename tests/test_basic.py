"""Tests for the dependency_audit package."""

import json

import pytest


def test_package_import():
    """Test that the package can be imported."""
    import dependency_audit
    assert dependency_audit.__version__ == "0.1.0"


def test_cli_import():
    """Test that CLI module can be imported."""
    from dependency_audit.cli import main
    assert callable(main)


def test_guess_manifest(tmp_path):
    """Test manifest discovery in a project directory."""
    from dependency_audit.cli import guess_manifest

    assert guess_manifest(tmp_path) is None
    (tmp_path / "Packages").write_text("six\n")
    assert guess_manifest(tmp_path) == tmp_path / "Packages"
    (tmp_path / "requirements.txt").write_text("six\n")
    assert guess_manifest(tmp_path) == tmp_path / "requirements.txt"


def test_clear_cache(tmp_path):
    """Test that --clear-cache removes cached data and exits."""
    from dependency_audit.cli import main
    from dependency_audit.packages import VERSIONS_CACHE

    cache = tmp_path / "cache" / VERSIONS_CACHE
    cache.mkdir(parents=True)
    (cache / "six.json").write_text("[]")

    assert main(["--cache-dir", str(tmp_path / "cache"), "--clear-cache"]) == 0
    assert not cache.exists()


def test_missing_manifest(tmp_path):
    """Test that the CLI refuses to run without a manifest."""
    from dependency_audit.cli import main

    with pytest.raises(SystemExit):
        main(["--dir", str(tmp_path), "--cache-dir", str(tmp_path / "cache")])


def test_cli_end_to_end(tmp_path, monkeypatch, make_registry, days_ago):
    """Test a full audit run against an in-memory registry."""
    from dependency_audit import cli

    registry = make_registry(
        versions={"six": [("1.15.0", days_ago(1500)), ("1.16.0", days_ago(1000))]},
        metadata={"six": {"homepage": "https://six.example", "license": "MIT", "changelog_url": None}},
        release_licenses={("six", "1.15.0"): "MIT", ("six", "1.16.0"): "MIT"},
    )
    monkeypatch.setattr(cli, "PyPIRegistryClient", lambda context: registry)

    manifest = tmp_path / "requirements.txt"
    manifest.write_text("six==1.15.0  # pinned\n-c constraints.txt\n")
    (tmp_path / "constraints.txt").write_text("unused>=1.0\n")
    output_dir = tmp_path / "out"

    status = cli.main([
        "--requirements", str(manifest),
        "--cache-dir", str(tmp_path / "cache"),
        "--output-dir", str(output_dir),
        "--no-cves",
    ])

    assert status == 0
    with open(output_dir / "requirements_audit.json") as f:
        rows = json.load(f)
    assert [row["name"] for row in rows] == ["six"]
    assert rows[0]["current_version"] == "1.15.0"
    assert rows[0]["recommended_version"] == "1.16.0"
    assert rows[0]["homepage"] == "https://six.example"
    assert (output_dir / "requirements_audit.csv").exists()
