from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from branchline.core.engagement import (
    EngagementPolicy,
    build_snapshot,
    classify_churn_risk,
    engagement_score,
    progress_achievements,
    session_durations,
)
from branchline.domain.models import Progress

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def test_engagement_score_is_capped_at_one_hundred() -> None:
    snapshot = build_snapshot(
        user_id="u1",
        stories_read=3,
        choices_made=25,
        premium_purchases=1,
        avg_session_seconds=900,
    )
    assert snapshot.engagement_score == 100
    assert snapshot.churn_risk == "medium"


def test_engagement_score_below_cap_is_weighted_sum() -> None:
    assert engagement_score(
        stories_read=1, choices_made=3, premium_purchases=0, avg_session_seconds=120
    ) == pytest.approx(28.0)


@pytest.mark.parametrize(
    ("avg_session_seconds", "choices_made", "expected"),
    [
        (1801, 21, "low"),
        (1800, 21, "medium"),
        (1801, 20, "medium"),
        (601, 6, "medium"),
        (600, 6, "high"),
        (601, 5, "high"),
        (0, 0, "high"),
    ],
)
def test_churn_boundaries_are_strict(
    avg_session_seconds: float, choices_made: int, expected: str
) -> None:
    assert (
        classify_churn_risk(avg_session_seconds=avg_session_seconds, choices_made=choices_made)
        == expected
    )


def test_churn_thresholds_come_from_policy() -> None:
    lenient = EngagementPolicy(low_risk_min_session_seconds=60, low_risk_min_choices=1)
    assert classify_churn_risk(avg_session_seconds=61, choices_made=2, policy=lenient) == "low"


def test_session_durations_split_on_idle_gap() -> None:
    timestamps = [
        T0 + timedelta(minutes=10),
        T0,
        T0 + timedelta(minutes=20),
        T0 + timedelta(hours=3),
        T0 + timedelta(hours=3, minutes=5),
    ]
    assert session_durations(timestamps, idle_gap_seconds=1800) == [1200.0, 300.0]
    assert session_durations([], idle_gap_seconds=1800) == []
    assert session_durations([T0], idle_gap_seconds=1800) == [0.0]


def test_progress_achievements_follow_milestones() -> None:
    base = Progress.initial(user_id="u1", story_id="s1", start_page_id="p0", now=T0)
    assert progress_achievements(base) == ()

    seen = replace(base, pages_seen=tuple(f"p{index}" for index in range(10)))
    assert progress_achievements(seen) == ("dedicated_reader",)

    buyer = replace(base, purchased_choice_ids=frozenset({"a", "b", "c", "d", "e"}))
    assert progress_achievements(buyer) == ("premium_supporter", "content_enthusiast")
