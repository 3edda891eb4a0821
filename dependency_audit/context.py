"""
Explicit audit-wide state shared by caches, clients and the CVE matcher.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .time_utils import from_epoch_seconds


DEFAULT_CACHE_ROOT = Path.home() / ".cache" / "dependency-audit"


@dataclass
class AuditContext:
    """Process-lifetime state for one audit run.

    ``failures`` memoizes failed cache computations by artifact path and
    ``last_query_time`` is the rate-limit clock for the vulnerability feed.
    Both are plain attributes; callers running audits in parallel must
    guard them with their own lock.
    """

    cache_root: Path = DEFAULT_CACHE_ROOT
    caching_enabled: bool = True
    config_dir: Optional[Path] = None
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep
    failures: Dict[str, BaseException] = field(default_factory=dict)
    last_query_time: Optional[float] = None
    policy: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.cache_root = Path(self.cache_root)
        if self.config_dir is not None:
            self.config_dir = Path(self.config_dir)

    def now(self) -> datetime:
        """Current time from the context clock as an aware UTC datetime."""
        return from_epoch_seconds(self.clock())
