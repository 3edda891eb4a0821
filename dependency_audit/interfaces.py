"""
Interfaces for registry and vulnerability-feed clients.
"""

from __future__ import annotations

from typing import Dict, List, Protocol


class RegistryClient(Protocol):
    """Query a package registry."""

    def get_versions(self, name: str) -> List[Dict]:
        """Return ``[{"version", "release_timestamp", "license_list"}, ...]``.

        ``release_timestamp`` is an ISO 8601 string or None; ``license_list``
        is None when the registry does not report per-version licenses.
        """
        ...

    def get_metadata(self, name: str) -> Dict:
        """Return ``{"homepage", "license", "changelog_url"}``."""
        ...

    def get_release_metadata(self, name: str, version: str) -> Dict:
        """Return ``{"license"}`` for one published version."""
        ...

    def get_direct_metadata(self, url: str) -> Dict:
        """Return ``{"name", "version"}`` declared by the package at ``url``."""
        ...


class VulnDBClient(Protocol):
    """Query a vulnerability feed."""

    def query_url(self, cpe_match_string: str) -> str:
        """The request URL for ``cpe_match_string`` (used as the cache identity)."""
        ...

    def query(self, cpe_match_string: str) -> Dict:
        """Return the raw JSON feed for ``cpe_match_string``."""
        ...
