"""Engagement snapshots derived from committed reader state."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from branchline.core.engagement import (
    DEFAULT_POLICY,
    PURCHASE_REASON,
    EngagementPolicy,
    build_snapshot,
    session_durations,
)
from branchline.core.ttl_cache import TtlCache
from branchline.domain.models import EngagementSnapshot
from branchline.domain.ports import ReaderStore

logger = logging.getLogger(__name__)


class EngagementAggregator:
    """Computes per-user engagement; results are cached for a short TTL."""

    def __init__(
        self,
        store: ReaderStore,
        *,
        policy: EngagementPolicy = DEFAULT_POLICY,
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._cache: TtlCache[str, EngagementSnapshot] = TtlCache(
            ttl_seconds=cache_ttl_seconds, clock=clock or time.monotonic
        )

    def compute_snapshot(self, user_id: str) -> EngagementSnapshot:
        return self._cache.get_or_load(user_id, lambda: self._compute(user_id))

    def invalidate(self, user_id: str | None = None) -> None:
        self._cache.invalidate(user_id)

    def _compute(self, user_id: str) -> EngagementSnapshot:
        progress_records = self._store.list_progress(user_id=user_id)
        events = self._store.list_choice_events(user_id=user_id)

        timestamps = [record.started_at for record in progress_records]
        timestamps.extend(event.created_at for event in events)
        durations = session_durations(
            timestamps, idle_gap_seconds=self._policy.session_idle_gap_seconds
        )
        avg_session_seconds = sum(durations) / len(durations) if durations else 0.0

        snapshot = build_snapshot(
            user_id=user_id,
            stories_read=len(progress_records),
            choices_made=len(events),
            premium_purchases=self._store.count_entries(user_id=user_id, reason=PURCHASE_REASON),
            avg_session_seconds=avg_session_seconds,
            policy=self._policy,
        )
        logger.debug(
            "engagement.computed user_id=%s score=%s churn_risk=%s",
            user_id,
            snapshot.engagement_score,
            snapshot.churn_risk,
        )
        return snapshot
