"""Story-level content performance and premium conversion from committed data."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from branchline.domain.models import (
    ChoicePopularity,
    ContentPerformance,
    PremiumChoiceAnalytics,
)
from branchline.domain.ports import ReaderStore, StoryGraphSource

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
POPULAR_CHOICE_LIMIT = 5


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


class StoryAnalytics:
    """Aggregates reading progress and choice events for one story at a time.

    Every figure is recomputed from the store, so results survive restarts and
    never depend on the in-process event buffer.
    """

    def __init__(
        self,
        *,
        graphs: StoryGraphSource,
        store: ReaderStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._graphs = graphs
        self._store = store
        self._clock = clock

    def content_performance(
        self, story_id: str, *, days: int = DEFAULT_WINDOW_DAYS
    ) -> ContentPerformance:
        graph = self._graphs.get_graph(story_id)
        since = self._window_start(days)
        readers = self._store.story_reader_stats(story_id=story_id, since=since)
        popular = tuple(
            ChoicePopularity(
                choice_id=stats.choice_id,
                text=graph.choices[stats.choice_id].text,
                selections=stats.selections,
                unique_readers=stats.unique_readers,
            )
            for stats in self._store.choice_stats(story_id=story_id, since=since)
            if stats.choice_id in graph.choices
        )[:POPULAR_CHOICE_LIMIT]
        performance = ContentPerformance(
            story_id=graph.story_id,
            title=graph.title,
            window_days=days,
            total_readers=readers.total_readers,
            completion_rate=_rate(readers.completed_readers, readers.total_readers),
            premium_conversion_rate=_rate(readers.paying_readers, readers.total_readers),
            avg_reading_seconds=readers.avg_reading_seconds,
            popular_choices=popular,
        )
        logger.info(
            "analytics.content_performance story_id=%s days=%s readers=%s",
            story_id,
            days,
            performance.total_readers,
        )
        return performance

    def premium_choice_analytics(
        self, story_id: str, *, days: int = DEFAULT_WINDOW_DAYS
    ) -> list[PremiumChoiceAnalytics]:
        """One row per premium choice in authoring order, including unsold ones."""
        graph = self._graphs.get_graph(story_id)
        since = self._window_start(days)
        stats_by_choice = {
            stats.choice_id: stats
            for stats in self._store.choice_stats(story_id=story_id, since=since)
        }
        reach = self._store.page_reach(story_id=story_id, since=since)

        results: list[PremiumChoiceAnalytics] = []
        for choice in sorted(graph.choices.values(), key=lambda item: item.order):
            if not choice.is_premium:
                continue
            stats = stats_by_choice.get(choice.choice_id)
            paying = stats.paying_readers if stats is not None else 0
            paid_selections = stats.paid_selections if stats is not None else 0
            reached = reach.get(choice.from_page_id, 0)
            results.append(
                PremiumChoiceAnalytics(
                    choice_id=choice.choice_id,
                    from_page_id=choice.from_page_id,
                    text=choice.text,
                    cost=choice.cost,
                    readers_reached=reached,
                    paying_readers=paying,
                    conversion_rate=_rate(paying, reached),
                    revenue=paid_selections * choice.cost,
                )
            )
        return results

    def _window_start(self, days: int) -> datetime:
        if days <= 0:
            raise ValueError("days must be positive.")
        return self._clock() - timedelta(days=days)
