"""Reader analytics event buffer with an explicit flush contract."""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

EventType = Literal[
    "page_view",
    "choice_made",
    "purchase",
    "story_completed",
    "go_back",
    "restart",
]
EventSink = Callable[[Sequence["ReaderEvent"]], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReaderEvent:
    """One navigation signal emitted after a committed transaction."""

    type: EventType
    user_id: str
    story_id: str
    page_id: str
    choice_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, object] = field(default_factory=dict)


def log_sink(events: Sequence[ReaderEvent]) -> None:
    """Default sink: summarize flushed events in the runtime log."""
    counts = Counter(event.type for event in events)
    logger.info(
        "analytics.flush events=%s by_type=%s",
        len(events),
        ",".join(f"{key}:{value}" for key, value in sorted(counts.items())),
    )


class EventTracker:
    """Bounded in-memory buffer; one instance per process, passed explicitly.

    ``flush`` hands the buffered events to the sink and empties the buffer.
    It runs automatically when the buffer reaches ``max_events``. A failing
    sink never propagates: the batch stays buffered for the next flush, up to
    ``max_retained`` events, after which the oldest are dropped.
    """

    def __init__(
        self,
        *,
        max_events: int = 1000,
        sink: EventSink = log_sink,
        max_retained: int | None = None,
    ) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive.")
        self._max_events = max_events
        self._max_retained = max(max_retained or max_events * 10, max_events)
        self._sink = sink
        self._events: deque[ReaderEvent] = deque()
        self._lock = threading.Lock()

    def track(self, event: ReaderEvent) -> None:
        with self._lock:
            self._events.append(event)
            full = len(self._events) >= self._max_events
        if event.type in {"purchase", "story_completed"}:
            logger.info(
                "analytics.%s user_id=%s story_id=%s page_id=%s choice_id=%s",
                event.type,
                event.user_id,
                event.story_id,
                event.page_id,
                event.choice_id,
            )
        if full:
            self.flush()

    def flush(self) -> int:
        """Deliver buffered events; returns how many the sink accepted."""
        with self._lock:
            batch = list(self._events)
            self._events.clear()
        if not batch:
            return 0
        try:
            self._sink(batch)
        except Exception:
            logger.exception("analytics.flush_failed events=%s", len(batch))
            self._requeue(batch)
            return 0
        return len(batch)

    def _requeue(self, batch: list[ReaderEvent]) -> None:
        with self._lock:
            self._events.extendleft(reversed(batch))
            dropped = 0
            while len(self._events) > self._max_retained:
                self._events.popleft()
                dropped += 1
        if dropped:
            logger.warning("analytics.events_dropped count=%s", dropped)

    def recent_events(self, limit: int = 100) -> list[ReaderEvent]:
        """Events still waiting in the buffer, oldest first."""
        with self._lock:
            events = list(self._events)
        return events[-limit:]
