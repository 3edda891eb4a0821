"""
HTTP clients for the package registry and the vulnerability feed.
"""

from __future__ import annotations

import configparser
import contextlib
import email.parser
import hashlib
import io
import json
import logging
import os
import subprocess
import sys
import tarfile
import tempfile
import tomllib
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

import requests

from .caching import DataCache, register_cache
from .context import AuditContext
from .errors import RegistryUnavailable, VulnFeedUnavailable
from .time_utils import parse_timestamp


logger = logging.getLogger(__name__)

PYPI_URL = "https://pypi.org/pypi"
NVD_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
DEFAULT_TIMEOUT = 30
CODE_CACHE = register_cache("py-code-cache")

CHANGELOG_LABELS = ("changelog", "change log", "changes", "release notes", "history", "news", "what's new")

_SETUP_CAPTURE = """\
import json, sys
from unittest.mock import patch

sys.path[0:0] = ['.']

def capture_setup(**kwargs):
    capture_setup.captured = kwargs

capture_setup.captured = {}
with patch('setuptools.setup', capture_setup):
    import setup

json.dump(
    capture_setup.captured,
    sys.stdout,
    default=lambda o: "<{}.{}>".format(type(o).__module__, type(o).__qualname__),
)
"""


def release_timestamp(files: List[Dict]) -> Optional[str]:
    """Earliest sdist upload time of a release, else earliest upload of any file."""
    def upload_times(candidates):
        times = []
        for f in candidates:
            stamp = parse_timestamp(f.get("upload_time_iso_8601") or f.get("upload_time"))
            if stamp is not None:
                times.append(stamp)
        return times

    times = upload_times(f for f in files if f.get("packagetype") == "sdist")
    if not times:
        times = upload_times(files)
    return min(times).isoformat() if times else None


def changelog_url(info: Dict) -> Optional[str]:
    """First changelog-like project URL, else the project page, else the homepage."""
    for label, url in (info.get("project_urls") or {}).items():
        if any(word in label.lower() for word in CHANGELOG_LABELS):
            return url
    return info.get("project_url") or info.get("home_page") or None


def homepage_url(info: Dict) -> Optional[str]:
    if info.get("home_page"):
        return info["home_page"]
    for label, url in (info.get("project_urls") or {}).items():
        if label.lower() in ("homepage", "home", "home page"):
            return url
    return None


def license_text(info: Dict) -> Optional[str]:
    text = info.get("license_expression") or info.get("license")
    if not text:
        return None
    # Some projects paste the whole license file here.
    return text.strip().splitlines()[0]


def read_package_metadata(root: Path) -> Dict[str, Optional[str]]:
    """Name and version declared by the unpacked package at ``root``."""
    found: Dict[str, Optional[str]] = {"name": None, "version": None}

    def merge(name, version):
        found["name"] = found["name"] or name
        found["version"] = found["version"] or version

    pkg_info = root / "PKG-INFO"
    if pkg_info.is_file():
        headers = email.parser.HeaderParser().parsestr(pkg_info.read_text(encoding="utf-8", errors="replace"))
        merge(headers.get("Name"), headers.get("Version"))

    pyproject = root / "pyproject.toml"
    if pyproject.is_file() and not all(found.values()):
        try:
            project = tomllib.loads(pyproject.read_text(encoding="utf-8")).get("project", {})
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
            logger.warning("Cannot read %s: %s", pyproject, e)
        else:
            merge(project.get("name"), project.get("version"))

    setup_cfg = root / "setup.cfg"
    if setup_cfg.is_file() and not all(found.values()):
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read(setup_cfg, encoding="utf-8")
        except configparser.Error as e:
            logger.warning("Cannot read %s: %s", setup_cfg, e)
        else:
            version = parser.get("metadata", "version", fallback=None)
            if version and version.startswith(("attr:", "file:")):
                version = None
            merge(parser.get("metadata", "name", fallback=None), version)

    if (root / "setup.py").is_file() and not all(found.values()):
        captured = _run_setup_py(root)
        merge(captured.get("name"), captured.get("version"))

    return found


def _run_setup_py(root: Path) -> Dict:
    try:
        completed = subprocess.run(
            [sys.executable, "-"],
            input=_SETUP_CAPTURE,
            cwd=root,
            capture_output=True,
            text=True,
            timeout=120,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Failed to run setup.py in %s: %s", root, e)
        return {}
    if completed.returncode != 0:
        logger.warning("Failed to read setup.py in %s", root)
        return {}
    try:
        captured = json.loads(completed.stdout)
    except ValueError as e:
        logger.warning("setup.py in %s produced unreadable output: %s", root, e)
        return {}
    return {k: v for k, v in captured.items() if isinstance(v, str)}


def _package_root(directory: Path) -> Path:
    # Archives usually wrap everything in a single top-level directory.
    entries = list(directory.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return directory


def _safe_member(name: str) -> bool:
    path = PurePosixPath(name)
    return not path.is_absolute() and ".." not in path.parts


class PyPIRegistryClient:
    """Registry client for the PyPI JSON API."""

    def __init__(
        self,
        context: Optional[AuditContext] = None,
        session: Optional[requests.Session] = None,
        base_url: str = PYPI_URL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.context = context or AuditContext()
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get_json(self, url: str) -> Dict:
        logger.debug("GET %s", url)
        try:
            with self.session.get(url, timeout=self.timeout) as response:
                response.raise_for_status()
                return response.json()
        except (requests.RequestException, ValueError) as e:
            raise RegistryUnavailable(f"{url}: {e}") from e

    def get_versions(self, name: str) -> List[Dict]:
        logger.info("Fetching release history for %s", name)
        data = self._get_json(f"{self.base_url}/{name}/json")
        return [
            {"version": ver, "release_timestamp": release_timestamp(files or []), "license_list": None}
            for ver, files in data.get("releases", {}).items()
        ]

    def get_metadata(self, name: str) -> Dict:
        info = self._get_json(f"{self.base_url}/{name}/json").get("info") or {}
        return {
            "homepage": homepage_url(info),
            "license": license_text(info),
            "changelog_url": changelog_url(info),
        }

    def get_release_metadata(self, name: str, version: str) -> Dict:
        info = self._get_json(f"{self.base_url}/{name}/{version}/json").get("info") or {}
        return {"license": license_text(info)}

    def get_direct_metadata(self, url: str) -> Dict:
        with self.package_files(url) as root:
            if root is None:
                return {"name": None, "version": None}
            return read_package_metadata(root)

    # -- direct references ----------------------------------------------------

    @property
    def code_cache(self) -> Path:
        return self.context.cache_root / CODE_CACHE

    @contextlib.contextmanager
    def package_files(self, url: str) -> Iterator[Optional[Path]]:
        """Unpack the package behind ``url``; yields None for unsupported URLs."""
        scheme = url.split(":", 1)[0].lower()
        path = urlsplit(url).path.lower()

        if scheme == "git" or scheme.startswith("git+"):
            git_url = url[4:] if scheme.startswith("git+") else url
            with self._git_worktree(git_url) as root:
                yield root
        elif scheme in ("http", "https") and path.endswith(".zip"):
            with self._unpacked_archive(url, self._extract_zip) as root:
                yield root
        elif scheme in ("http", "https") and path.endswith((".tar.gz", ".tgz")):
            with self._unpacked_archive(url, self._extract_tar) as root:
                yield root
        else:
            logger.warning("Unable to process URL package requirement: %s", url)
            yield None

    def _download(self, url: str, destination: Path) -> None:
        logger.info("Downloading %s", url)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=65536):
                        f.write(chunk)
        except requests.RequestException as e:
            partial.unlink(missing_ok=True)
            raise RegistryUnavailable(f"{url}: {e}") from e
        os.replace(partial, destination)

    @contextlib.contextmanager
    def _unpacked_archive(self, url: str, extract) -> Iterator[Path]:
        archive = self.code_cache / hashlib.sha256(url.encode("utf-8")).hexdigest()
        if self.context.caching_enabled and DataCache(self.context, CODE_CACHE).is_fresh(archive):
            logger.debug("Using cached archive %s for %s", archive, url)
        else:
            self._download(url, archive)
        with tempfile.TemporaryDirectory(prefix="dependency-audit-") as workdir:
            extract(archive, Path(workdir))
            yield _package_root(Path(workdir))

    def _extract_zip(self, archive: Path, destination: Path) -> None:
        try:
            with zipfile.ZipFile(archive) as zf:
                for member in zf.namelist():
                    if _safe_member(member):
                        zf.extract(member, destination)
                    else:
                        logger.warning("Did not extract %s from %s", member, archive)
        except zipfile.BadZipFile as e:
            raise RegistryUnavailable(f"Bad zip archive {archive}: {e}") from e

    def _extract_tar(self, archive: Path, destination: Path) -> None:
        try:
            with tarfile.open(archive, "r:*") as tf:
                tf.extractall(destination, filter="data")
        except tarfile.TarError as e:
            raise RegistryUnavailable(f"Bad tar archive {archive}: {e}") from e

    def _git(self, *args: str) -> bytes:
        logger.debug("git %s", " ".join(args))
        try:
            completed = subprocess.run(["git", *args], capture_output=True, timeout=600)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RegistryUnavailable(f"Cannot run git: {e}") from e
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", "replace").strip()
            raise RegistryUnavailable(f"git {' '.join(args[2:] if args[0] == '-C' else args)} failed: {stderr}")
        return completed.stdout

    @contextlib.contextmanager
    def _git_worktree(self, url: str) -> Iterator[Path]:
        parts = urlsplit(url)
        repo_path_part, _, committish = parts.path.partition("@")
        git_url = urlunsplit((parts.scheme, parts.netloc, repo_path_part, parts.query, ""))
        subdirectory = parse_qs(parts.fragment).get("subdirectory", ["."])[0]

        repo = self.code_cache / f"git_{hashlib.sha256(git_url.encode('utf-8')).hexdigest()[:20]}.git"
        self.code_cache.mkdir(parents=True, exist_ok=True)
        if repo.exists():
            logger.info("Fetching %s to %s", git_url, repo)
            self._git("-C", str(repo), "fetch", "--tags", "origin", "+refs/heads/*:refs/heads/*")
        else:
            logger.info("Cloning %s to %s", git_url, repo)
            self._git("clone", "--bare", git_url, str(repo))

        archive = self._git("-C", str(repo), "archive", "--format=tar", committish or "HEAD")
        with tempfile.TemporaryDirectory(prefix="dependency-audit-git-") as workdir:
            with tarfile.open(fileobj=io.BytesIO(archive)) as tf:
                tf.extractall(workdir, filter="data")
            yield Path(workdir) / subdirectory


class NVDClient:
    """Vulnerability feed client for the NVD CVE API."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = NVD_URL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session or requests.Session()
        self.base_url = base_url
        self.api_key = api_key if api_key is not None else os.environ.get("NVD_API_KEY")
        self.timeout = timeout

    def query_url(self, cpe_match_string: str) -> str:
        return f"{self.base_url}?{urlencode({'virtualMatchString': cpe_match_string})}"

    def query(self, cpe_match_string: str) -> Dict:
        url = self.query_url(cpe_match_string)
        headers = {"apiKey": self.api_key} if self.api_key else {}
        logger.info("Querying vulnerability feed: %s", cpe_match_string)
        try:
            with self.session.get(url, headers=headers, timeout=self.timeout) as response:
                response.raise_for_status()
                return response.json()
        except (requests.RequestException, ValueError) as e:
            raise VulnFeedUnavailable(f"{url}: {e}") from e
