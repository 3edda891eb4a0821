"""
File-backed JSON caches with a staleness window and failure memoization.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, Callable, List, TypeVar

from .context import AuditContext
from .time_utils import ONE_DAY


logger = logging.getLogger(__name__)

T = TypeVar("T")

_SIMPLE_KEY = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

_CACHE_NAMES: List[str] = []


def register_cache(name: str) -> str:
    """Declare ``name`` as a cache directory under the cache root."""
    if name not in _CACHE_NAMES:
        _CACHE_NAMES.append(name)
    return name


def cache_names() -> List[str]:
    """All declared cache directory names."""
    return list(_CACHE_NAMES)


def clear_caches(context: AuditContext) -> List[Path]:
    """Remove every declared cache directory, returning the removed paths."""
    removed = []
    for name in _CACHE_NAMES:
        directory = context.cache_root / name
        if directory.exists():
            shutil.rmtree(directory)
            removed.append(directory)
            logger.info("Removed cache %s", directory)
    return removed


def cache_key(*parts: Any) -> str:
    """Derive a file-name-safe cache key.

    A single simple string is used literally; anything else is hashed.
    """
    if len(parts) == 1 and isinstance(parts[0], str) and _SIMPLE_KEY.fullmatch(parts[0]):
        return parts[0]
    payload = json.dumps(list(parts), sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DataCache:
    """A directory of JSON artifacts, one per key."""

    def __init__(self, context: AuditContext, name: str) -> None:
        self.context = context
        self.name = register_cache(name)

    @property
    def directory(self) -> Path:
        return self.context.cache_root / self.name

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def is_fresh(self, path: Path) -> bool:
        """True if ``path`` exists and is younger than the staleness window."""
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return False
        return self.context.clock() - mtime < ONE_DAY.total_seconds()

    def apply(self, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value for ``key`` or compute and store it.

        A computation that failed earlier in this process is not retried;
        the original exception is raised again.  Interrupts are never
        remembered.
        """
        path = self.path_for(key)
        if self.context.caching_enabled and self.is_fresh(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    logger.debug("Cache hit: %s", path)
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable cache artifact %s: %s", path, e)

        memo_key = str(path)
        failure = self.context.failures.get(memo_key)
        if failure is not None:
            raise failure

        try:
            value = compute()
        except Exception as e:
            self.context.failures[memo_key] = e
            raise

        self._store(path, value)
        return value

    def _store(self, path: Path, value: Any) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(value, f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Could not write cache artifact %s: %s", path, e)
