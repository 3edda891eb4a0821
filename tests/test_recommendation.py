from datetime import datetime, timedelta, timezone

import pytest

from dependency_audit.constraints import Constraint
from dependency_audit.models import Release
from dependency_audit.recommendation import (
    MILD,
    MODERATE,
    SEVERE,
    classify_obsolescence,
    days_between_current_and_recommended,
    obsolescence_by_age,
    recommend_version,
    release_age,
)
from dependency_audit.versions import parse_version


NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def release(version, days_before_now):
    return Release(parse_version(version), NOW - timedelta(days=days_before_now))


def recommended(releases, constraints=(), current=None):
    return recommend_version(releases, list(constraints), now=NOW, current=current)


def test_recommends_newest_release_old_enough():
    # Released at day 0, 40 and 100; evaluated on day 130.
    releases = [release("1.0.2", 30), release("1.0.1", 90), release("1.0.0", 130)]

    assert recommended(releases) == parse_version("1.0.1")


def test_never_recommends_moving_backward():
    releases = [release("1.0.2", 30), release("1.0.1", 90), release("1.0.0", 130)]
    current = parse_version("1.0.2")

    assert recommended(releases, current=current) is current
    assert recommended(releases, current=parse_version("1.0.1")) == parse_version("1.0.1")


def test_release_superseded_quickly_is_skipped():
    releases = [release("1.0.2", 80), release("1.0.1", 92), release("1.0.0", 200)]

    # 1.0.1 only stood for 12 days before 1.0.2 replaced it.
    assert recommended(releases) == parse_version("1.0.0")


def test_older_release_line_restores_horizon():
    releases = [release("2.0.0", 80), release("1.9.0", 92), release("1.8.0", 300)]

    assert recommended(releases) == parse_version("1.9.0")


def test_constraints_are_evaluated_loosely():
    releases = [release("1.0.2", 100), release("1.0.1", 200)]

    assert recommended(releases, [Constraint("<", "1.0.2")]) == parse_version("1.0.1")
    assert recommended(releases, [Constraint("==", "1.0.1")]) == parse_version("1.0.2")


def test_no_recommendation():
    assert recommended([]) is None
    assert recommended([release("1.0", 10)]) is None
    assert recommended([release("weird-version", 500)]) is None


@pytest.mark.parametrize(
    "current,recommended_version,days,expected",
    [
        ("1.0", "3.0", 10, SEVERE),
        ("1.0", "2.0", 100, MODERATE),
        ("1.0", "2.0", 800, SEVERE),
        ("1.0", "1.5", 100, None),
        ("1.0", "1.5", 300, MILD),
        ("1.0", "1.5", 600, MODERATE),
        ("1.0", "1.5", 730, SEVERE),
        ("1.0", "1.5", None, None),
        ("2.0", "1.0", 900, None),
        ("1.0", "1!0.5", 300, MILD),
    ],
)
def test_classify_obsolescence(current, recommended_version, days, expected):
    assert classify_obsolescence(parse_version(current), parse_version(recommended_version), days) == expected


def test_classify_obsolescence_needs_structured_versions():
    assert classify_obsolescence(None, parse_version("1.0"), 1000) is None
    assert classify_obsolescence(parse_version("custom"), parse_version("1.0"), 1000) is None


def test_obsolescence_by_age_floor():
    assert obsolescence_by_age(10) is None
    assert obsolescence_by_age(10, at_least_moderate=True) == MODERATE
    assert obsolescence_by_age(269) is None
    assert obsolescence_by_age(270) == MILD
    assert obsolescence_by_age(499, at_least_moderate=True) == MODERATE
    assert obsolescence_by_age(500) == MODERATE
    assert obsolescence_by_age(730) == SEVERE


def test_days_between_versions():
    releases = [release("2.0", 10), release("1.5", 110), release("1.0", 410)]

    assert days_between_current_and_recommended(releases, parse_version("1.0"), parse_version("2.0")) == 400
    assert days_between_current_and_recommended(releases, parse_version("1.7"), parse_version("2.0")) is None
    assert days_between_current_and_recommended(releases, None, parse_version("2.0")) is None


def test_prerelease_current_uses_nearest_lower_release():
    releases = [release("2.0", 10), release("1.5", 110), release("1.0", 410)]

    assert days_between_current_and_recommended(releases, parse_version("1.6rc1"), parse_version("2.0")) == 100


def test_release_age():
    releases = [release("1.5", 110), release("1.0", 410)]

    assert release_age(releases, parse_version("1.0"), NOW) == 410
    assert release_age(releases, parse_version("1.0.0"), NOW) == 410
    assert release_age(releases, parse_version("0.1"), NOW) is None
