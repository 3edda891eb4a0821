import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest

from dependency_audit.context import AuditContext
from dependency_audit.errors import RegistryUnavailable, reset_warnings


class FakeClock:
    """Stands in for ``time.time`` / ``time.sleep``; sleeping advances the clock."""

    def __init__(self, start: Optional[float] = None) -> None:
        self.now = time.time() if start is None else start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRegistry:
    """In-memory registry keyed by package name."""

    def __init__(
        self,
        versions: Optional[Dict[str, List[Tuple[str, Optional[datetime]]]]] = None,
        metadata: Optional[Dict[str, Dict]] = None,
        release_licenses: Optional[Dict[Tuple[str, str], str]] = None,
        direct: Optional[Dict[str, Dict]] = None,
    ) -> None:
        self.versions = versions or {}
        self.metadata = metadata or {}
        self.release_licenses = release_licenses or {}
        self.direct = direct or {}
        self.calls: List[Tuple[str, str]] = []

    def get_versions(self, name: str) -> List[Dict]:
        self.calls.append(("versions", name))
        if name not in self.versions:
            raise RegistryUnavailable(f"{name}: 404 Not Found")
        return [
            {
                "version": ver,
                "release_timestamp": released.isoformat() if released else None,
                "license_list": None,
            }
            for ver, released in self.versions[name]
        ]

    def get_metadata(self, name: str) -> Dict:
        self.calls.append(("metadata", name))
        if name not in self.metadata:
            raise RegistryUnavailable(f"{name}: 404 Not Found")
        return self.metadata[name]

    def get_release_metadata(self, name: str, version: str) -> Dict:
        self.calls.append(("release", f"{name}=={version}"))
        return {"license": self.release_licenses.get((name, version))}

    def get_direct_metadata(self, url: str) -> Dict:
        self.calls.append(("direct", url))
        return self.direct.get(url, {"name": None, "version": None})


class FakeVulnDB:
    """Vulnerability feed returning canned responses per CPE match string."""

    def __init__(self, clock: FakeClock, feeds: Optional[Dict[str, Dict]] = None, default: Optional[Dict] = None) -> None:
        self.clock = clock
        self.feeds = feeds or {}
        self.default = default if default is not None else {"result": {"CVE_Items": []}}
        self.queries: List[Tuple[str, float]] = []

    def query_url(self, cpe_match_string: str) -> str:
        return f"https://feed.example/cves?cpeMatchString={cpe_match_string}"

    def query(self, cpe_match_string: str) -> Dict:
        self.queries.append((cpe_match_string, self.clock()))
        return self.feeds.get(cpe_match_string, self.default)


@pytest.fixture(autouse=True)
def _fresh_warnings():
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context(tmp_path, clock) -> AuditContext:
    return AuditContext(
        cache_root=tmp_path / "cache",
        config_dir=tmp_path,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def make_registry():
    """Factory for :class:`FakeRegistry` instances."""
    return FakeRegistry


@pytest.fixture
def make_vulndb(clock):
    """Factory for :class:`FakeVulnDB` instances bound to the test clock."""
    def factory(feeds=None, default=None):
        return FakeVulnDB(clock, feeds=feeds, default=default)
    return factory


@pytest.fixture
def days_ago(context):
    """Datetime ``days`` before the context clock."""
    def at(days: float) -> datetime:
        return context.now() - timedelta(days=days)
    return at
