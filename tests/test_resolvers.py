import io
import logging
import zipfile

import pytest
import requests

from dependency_audit.errors import RegistryUnavailable, VulnFeedUnavailable
from dependency_audit.resolvers import (
    NVDClient,
    PyPIRegistryClient,
    changelog_url,
    homepage_url,
    license_text,
    read_package_metadata,
    release_timestamp,
)


class FakeResponse:
    def __init__(self, payload=None, status=200, content=b""):
        self.payload = payload
        self.status = status
        self.content = content

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} Error")

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.responses.get(url, FakeResponse(status=404))


def test_release_timestamp_prefers_sdist():
    files = [
        {"packagetype": "bdist_wheel", "upload_time_iso_8601": "2020-01-01T00:00:00.000000Z"},
        {"packagetype": "sdist", "upload_time_iso_8601": "2020-01-04T00:00:00.000000Z"},
        {"packagetype": "sdist", "upload_time_iso_8601": "2020-01-03T00:00:00.000000Z"},
    ]

    assert release_timestamp(files) == "2020-01-03T00:00:00+00:00"
    assert release_timestamp(files[:1]) == "2020-01-01T00:00:00+00:00"
    assert release_timestamp([]) is None


def test_project_links():
    info = {
        "home_page": "",
        "project_url": "https://pypi.org/project/demo/",
        "project_urls": {"Source": "https://git.example/demo", "Release Notes": "https://demo.example/notes"},
    }

    assert changelog_url(info) == "https://demo.example/notes"
    assert changelog_url({"project_url": "https://pypi.org/project/demo/"}) == "https://pypi.org/project/demo/"
    assert homepage_url(info) is None
    assert homepage_url({"project_urls": {"Homepage": "https://demo.example"}}) == "https://demo.example"
    assert homepage_url({"home_page": "https://home.example"}) == "https://home.example"


def test_license_text():
    assert license_text({"license": "MIT License\n\nPermission is hereby granted"}) == "MIT License"
    assert license_text({"license_expression": "Apache-2.0", "license": "Apache"}) == "Apache-2.0"
    assert license_text({"license": ""}) is None


def test_metadata_from_pkg_info(tmp_path):
    (tmp_path / "PKG-INFO").write_text("Metadata-Version: 2.1\nName: demo\nVersion: 1.2\n")

    assert read_package_metadata(tmp_path) == {"name": "demo", "version": "1.2"}


def test_metadata_from_pyproject(tmp_path):
    (tmp_path / "pyproject.toml").write_text('[project]\nname = "demo"\nversion = "0.3"\n')

    assert read_package_metadata(tmp_path) == {"name": "demo", "version": "0.3"}


def test_metadata_from_setup_cfg_ignores_directives(tmp_path):
    (tmp_path / "setup.cfg").write_text("[metadata]\nname = demo\nversion = attr: demo.__version__\n")

    assert read_package_metadata(tmp_path) == {"name": "demo", "version": None}


def test_get_versions():
    url = "https://pypi.test/pypi/demo/json"
    session = FakeSession({
        url: FakeResponse({
            "releases": {
                "1.0": [{"packagetype": "sdist", "upload_time_iso_8601": "2020-01-01T00:00:00.000000Z"}],
                "2.0": [],
            }
        })
    })
    client = PyPIRegistryClient(session=session, base_url="https://pypi.test/pypi/")

    assert client.get_versions("demo") == [
        {"version": "1.0", "release_timestamp": "2020-01-01T00:00:00+00:00", "license_list": None},
        {"version": "2.0", "release_timestamp": None, "license_list": None},
    ]
    assert session.requests[0][1]["timeout"] == 30


def test_get_metadata():
    session = FakeSession({
        "https://pypi.test/pypi/demo/json": FakeResponse({
            "info": {"home_page": "https://demo.example", "license": "BSD", "project_urls": None}
        }),
        "https://pypi.test/pypi/demo/1.0/json": FakeResponse({"info": {"license": "MIT"}}),
    })
    client = PyPIRegistryClient(session=session, base_url="https://pypi.test/pypi")

    assert client.get_metadata("demo") == {
        "homepage": "https://demo.example",
        "license": "BSD",
        "changelog_url": "https://demo.example",
    }
    assert client.get_release_metadata("demo", "1.0") == {"license": "MIT"}


@pytest.mark.parametrize("response", [FakeResponse(status=404), FakeResponse(payload=None)])
def test_registry_errors(response):
    client = PyPIRegistryClient(session=FakeSession({"https://pypi.test/pypi/demo/json": response}), base_url="https://pypi.test/pypi")

    with pytest.raises(RegistryUnavailable):
        client.get_versions("demo")


def test_unsupported_direct_reference(context, caplog):
    client = PyPIRegistryClient(context=context, session=FakeSession({}))

    with caplog.at_level(logging.WARNING):
        assert client.get_direct_metadata("https://example.com/demo-1.0-py3-none-any.whl") == {
            "name": None,
            "version": None,
        }
    assert "Unable to process URL package requirement" in caplog.text


def test_zip_direct_reference(context, caplog):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("demo-1.4/PKG-INFO", "Metadata-Version: 2.1\nName: demo\nVersion: 1.4\n")
        zf.writestr("../escape.txt", "nope")
    url = "https://example.com/demo-1.4.zip"
    client = PyPIRegistryClient(context=context, session=FakeSession({url: FakeResponse(content=buffer.getvalue())}))

    with caplog.at_level(logging.WARNING):
        assert client.get_direct_metadata(url) == {"name": "demo", "version": "1.4"}
    assert "Did not extract ../escape.txt" in caplog.text


def test_nvd_query(monkeypatch):
    monkeypatch.setenv("NVD_API_KEY", "secret")
    client = NVDClient(session=None, base_url="https://nvd.test/cves")
    url = client.query_url("cpe:2.3:a:*:demo:1.0:*:*:*:*:*:*:*")
    client.session = FakeSession({url: FakeResponse({"vulnerabilities": []})})

    assert url.startswith("https://nvd.test/cves?virtualMatchString=cpe%3A2.3%3Aa%3A%2A%3Ademo")
    assert client.query("cpe:2.3:a:*:demo:1.0:*:*:*:*:*:*:*") == {"vulnerabilities": []}
    assert client.session.requests[0][1]["headers"] == {"apiKey": "secret"}


def test_nvd_errors():
    client = NVDClient(session=FakeSession({}), base_url="https://nvd.test/cves", api_key="")

    with pytest.raises(VulnFeedUnavailable):
        client.query("cpe:2.3:a:*:demo:1.0:*:*:*:*:*:*:*")


def test_downloaded_archive_is_reused_while_fresh(context, clock):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("demo-1.4/PKG-INFO", "Metadata-Version: 2.1\nName: demo\nVersion: 1.4\n")
    url = "https://example.com/demo-1.4.zip"
    session = FakeSession({url: FakeResponse(content=buffer.getvalue())})
    client = PyPIRegistryClient(context=context, session=session)

    client.get_direct_metadata(url)
    client.get_direct_metadata(url)
    assert len(session.requests) == 1

    clock.advance(2 * 24 * 3600)
    assert client.get_direct_metadata(url) == {"name": "demo", "version": "1.4"}
    assert len(session.requests) == 2
    assert not list(client.code_cache.glob("*.part"))
