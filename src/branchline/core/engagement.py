"""Pure engagement scoring, churn classification, and session derivation."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from branchline.domain.models import ChurnRisk, EngagementSnapshot, Progress

PURCHASE_REASON = "choice_purchase"


@dataclass(frozen=True)
class EngagementPolicy:
    """Score weights and churn thresholds. Boundaries are strict (``>``)."""

    story_weight: float = 10.0
    choice_weight: float = 2.0
    premium_weight: float = 50.0
    session_weight: float = 0.1
    score_cap: float = 100.0
    low_risk_min_session_seconds: float = 1800.0
    low_risk_min_choices: int = 20
    medium_risk_min_session_seconds: float = 600.0
    medium_risk_min_choices: int = 5
    session_idle_gap_seconds: float = 1800.0


DEFAULT_POLICY = EngagementPolicy()


def engagement_score(
    *,
    stories_read: int,
    choices_made: int,
    premium_purchases: int,
    avg_session_seconds: float,
    policy: EngagementPolicy = DEFAULT_POLICY,
) -> float:
    raw = (
        stories_read * policy.story_weight
        + choices_made * policy.choice_weight
        + premium_purchases * policy.premium_weight
        + avg_session_seconds * policy.session_weight
    )
    return min(policy.score_cap, raw)


def classify_churn_risk(
    *,
    avg_session_seconds: float,
    choices_made: int,
    policy: EngagementPolicy = DEFAULT_POLICY,
) -> ChurnRisk:
    if (
        avg_session_seconds > policy.low_risk_min_session_seconds
        and choices_made > policy.low_risk_min_choices
    ):
        return "low"
    if (
        avg_session_seconds > policy.medium_risk_min_session_seconds
        and choices_made > policy.medium_risk_min_choices
    ):
        return "medium"
    return "high"


def session_durations(
    timestamps: Iterable[datetime], *, idle_gap_seconds: float
) -> list[float]:
    """Split activity into sessions wherever the gap exceeds ``idle_gap_seconds``."""
    ordered = sorted(timestamps)
    if not ordered:
        return []
    durations: list[float] = []
    session_start = previous = ordered[0]
    for moment in ordered[1:]:
        if (moment - previous).total_seconds() > idle_gap_seconds:
            durations.append((previous - session_start).total_seconds())
            session_start = moment
        previous = moment
    durations.append((previous - session_start).total_seconds())
    return durations


def build_snapshot(
    *,
    user_id: str,
    stories_read: int,
    choices_made: int,
    premium_purchases: int,
    avg_session_seconds: float,
    policy: EngagementPolicy = DEFAULT_POLICY,
) -> EngagementSnapshot:
    return EngagementSnapshot(
        user_id=user_id,
        stories_read=stories_read,
        choices_made=choices_made,
        premium_purchases=premium_purchases,
        avg_session_seconds=avg_session_seconds,
        engagement_score=engagement_score(
            stories_read=stories_read,
            choices_made=choices_made,
            premium_purchases=premium_purchases,
            avg_session_seconds=avg_session_seconds,
            policy=policy,
        ),
        churn_risk=classify_churn_risk(
            avg_session_seconds=avg_session_seconds,
            choices_made=choices_made,
            policy=policy,
        ),
    )


def progress_achievements(progress: Progress) -> tuple[str, ...]:
    """Milestones shown alongside progress."""
    achievements: list[str] = []
    if len(progress.pages_seen) >= 10:
        achievements.append("dedicated_reader")
    purchases = len(progress.purchased_choice_ids)
    if purchases >= 3:
        achievements.append("premium_supporter")
    if purchases >= 5:
        achievements.append("content_enthusiast")
    return tuple(achievements)
