"""
Recommended-version selection and obsolescence classification.

The recommendation walks releases from newest to oldest looking for one that
has been public for at least ``MIN_RELEASED_DAYS``.  Every newer release that
is rejected pulls the time horizon back so the chosen version also had
``MIN_STABLE_DAYS`` without a successor; stepping back into an older
major/minor line restores the original horizon.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from .constraints import Constraint, satisfies_all
from .models import Release
from .time_utils import days_between
from .versions import AnyVersion, Version, nonpatch_segments


MIN_RELEASED_DAYS = 90
MIN_STABLE_DAYS = 14

MILD = "mild"
MODERATE = "moderate"
SEVERE = "severe"


def _is_candidate(version: AnyVersion) -> bool:
    return isinstance(version, Version) and not version.is_prerelease


def recommend_version(
    releases: Sequence[Release],
    constraints: Sequence[Constraint],
    now: datetime,
    current: Optional[AnyVersion] = None,
    min_released_days: int = MIN_RELEASED_DAYS,
    min_stable_days: int = MIN_STABLE_DAYS,
) -> Optional[AnyVersion]:
    """Pick the version to recommend from ``releases`` (sorted newest first).

    Returns ``current`` when it is at least as new as the first acceptable
    candidate, and None when nothing qualifies.
    """
    if not releases:
        return None

    orig_time_horizon = time_horizon = now - timedelta(days=min_released_days)
    horizon_segments = None
    for release in releases:
        if _is_candidate(release.version):
            horizon_segments = nonpatch_segments(release.version)
            break

    for release in releases:
        candidate = release.version
        if not _is_candidate(candidate):
            continue
        if current is not None and current >= candidate:
            return current

        if nonpatch_segments(candidate) < horizon_segments:
            time_horizon = orig_time_horizon

        if release.released_at <= time_horizon and satisfies_all(constraints, candidate, strict=False):
            return candidate
        time_horizon = min(time_horizon, release.released_at - timedelta(days=min_stable_days))

    return None


def obsolescence_by_age(days: Optional[int], at_least_moderate: bool = False) -> Optional[str]:
    """Classify the gap in days between current and recommended versions."""
    if days is None or days < 270:
        return MODERATE if at_least_moderate else None
    if days < 500:
        return MODERATE if at_least_moderate else MILD
    if days < 730:
        return MODERATE
    return SEVERE


def classify_obsolescence(
    current: Optional[AnyVersion],
    recommended: Optional[AnyVersion],
    days_between_versions: Optional[int],
) -> Optional[str]:
    """Obsolescence of ``current`` relative to ``recommended``."""
    if not isinstance(current, Version) or not isinstance(recommended, Version):
        return None

    cv_major = (current.epoch, current.major)
    rv_major = (recommended.epoch, recommended.major)
    if rv_major < cv_major:
        return None

    at_least_moderate = False
    if cv_major[0] == rv_major[0]:
        if cv_major[1] + 1 < rv_major[1]:
            return SEVERE
        if cv_major[1] < rv_major[1]:
            at_least_moderate = True
    # A newer epoch cannot be compared by major number; rely on elapsed days.

    return obsolescence_by_age(days_between_versions, at_least_moderate=at_least_moderate)


def find_release(releases: Sequence[Release], version: Optional[AnyVersion]) -> Optional[Release]:
    """The release entry equal to ``version``."""
    if version is None:
        return None
    for release in releases:
        if release.version == version:
            return release
    return None


def days_between_current_and_recommended(
    releases: Sequence[Release],
    current: Optional[AnyVersion],
    recommended: Optional[AnyVersion],
) -> Optional[int]:
    """Days between the release of ``current`` and of ``recommended``.

    A prerelease ``current`` is dated by the nearest release below it.
    """
    if current is None or recommended is None:
        return None

    if isinstance(current, Version) and current.is_prerelease:
        current_release = next((r for r in releases if r.version < current), None)
    else:
        current_release = find_release(releases, current)
    recommended_release = find_release(releases, recommended)
    if current_release is None or recommended_release is None:
        return None

    return days_between(current_release.released_at, recommended_release.released_at)


def release_age(releases: Sequence[Release], current: Optional[AnyVersion], now: datetime) -> Optional[int]:
    """Days since ``current`` was released."""
    release = find_release(releases, current)
    if release is None:
        return None
    return days_between(release.released_at, now)
