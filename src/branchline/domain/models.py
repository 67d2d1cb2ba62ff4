"""Core reader domain models: story graph arena, progress, and ledger records."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Literal

ChurnRisk = Literal["low", "medium", "high"]


class PageKind(str, Enum):
    """Discriminant for page variants; rendering and evaluation switch on it."""

    STORY = "story"
    CHOICE = "choice"
    ENDING = "ending"


@dataclass(frozen=True)
class Page:
    """One node in a story graph."""

    page_id: str
    page_number: int
    content: str
    kind: PageKind = PageKind.STORY

    @property
    def is_ending(self) -> bool:
        return self.kind is PageKind.ENDING


@dataclass(frozen=True)
class Choice:
    """A directed edge between two pages, free or premium."""

    choice_id: str
    from_page_id: str
    to_page_id: str
    text: str
    is_premium: bool = False
    cost: int = 0
    order: int = 0


@dataclass(frozen=True)
class StoryGraph:
    """Immutable page/choice arena for one story version.

    Pages and choices reference each other only by id, so cycles are plain
    id references. ``outgoing`` keeps choice ids per page in authoring order.
    The mappings are read-only views; ``StoryGraph.build`` wraps plain dicts.
    """

    story_id: str
    title: str
    start_page_id: str
    pages: Mapping[str, Page]
    choices: Mapping[str, Choice]
    outgoing: Mapping[str, tuple[str, ...]]
    version: int = 1

    @classmethod
    def build(
        cls,
        *,
        story_id: str,
        title: str,
        start_page_id: str,
        pages: Mapping[str, Page],
        choices: Mapping[str, Choice],
        outgoing: Mapping[str, tuple[str, ...]],
        version: int = 1,
    ) -> StoryGraph:
        return cls(
            story_id=story_id,
            title=title,
            start_page_id=start_page_id,
            pages=MappingProxyType(dict(pages)),
            choices=MappingProxyType(dict(choices)),
            outgoing=MappingProxyType(dict(outgoing)),
            version=version,
        )

    def outgoing_choices(self, page_id: str) -> tuple[Choice, ...]:
        return tuple(self.choices[choice_id] for choice_id in self.outgoing.get(page_id, ()))


@dataclass(frozen=True)
class Progress:
    """Per (user, story) navigation state.

    ``visited_history`` holds pages entered through choices; when it is empty
    the reader sits on the start page. ``version`` increments on every commit.
    """

    user_id: str
    story_id: str
    current_page_id: str
    started_at: datetime
    last_read_at: datetime
    visited_history: tuple[str, ...] = ()
    purchased_choice_ids: frozenset[str] = frozenset()
    pages_seen: tuple[str, ...] = ()
    is_completed: bool = False
    completed_at: datetime | None = None
    version: int = 0

    @classmethod
    def initial(
        cls, *, user_id: str, story_id: str, start_page_id: str, now: datetime
    ) -> Progress:
        return cls(
            user_id=user_id,
            story_id=story_id,
            current_page_id=start_page_id,
            started_at=now,
            last_read_at=now,
            pages_seen=(start_page_id,),
        )

    def moved_to(
        self,
        *,
        page_id: str,
        now: datetime,
        purchased_choice_id: str | None = None,
        completed: bool = False,
    ) -> Progress:
        """Return progress after entering ``page_id`` through a choice."""
        purchased = self.purchased_choice_ids
        if purchased_choice_id is not None:
            purchased = purchased | {purchased_choice_id}
        seen = self.pages_seen if page_id in self.pages_seen else (*self.pages_seen, page_id)
        return replace(
            self,
            current_page_id=page_id,
            visited_history=(*self.visited_history, page_id),
            purchased_choice_ids=purchased,
            pages_seen=seen,
            is_completed=self.is_completed or completed,
            completed_at=self.completed_at or (now if completed else None),
            last_read_at=now,
        )


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only balance change record."""

    entry_id: str
    user_id: str
    delta: int
    reason: str
    idempotency_key: str
    balance_after: int
    created_at: datetime
    related_choice_id: str | None = None


@dataclass(frozen=True)
class ChoiceEvent:
    """One applied choice, written in the same transaction as the move."""

    event_id: str
    user_id: str
    story_id: str
    choice_id: str
    from_page_id: str
    to_page_id: str
    paid: bool
    created_at: datetime


@dataclass(frozen=True)
class NavigationReceipt:
    """Idempotency record for one applied advance request."""

    idempotency_key: str
    user_id: str
    story_id: str
    choice_id: str
    to_page_id: str
    progress_version: int
    created_at: datetime


@dataclass(frozen=True)
class ChoiceEvaluation:
    """Choice annotated with accessibility for the current reader."""

    choice: Choice
    accessible: bool
    requires_purchase: bool
    reason: str


@dataclass(frozen=True)
class TensionMetrics:
    """Premium-pressure signals for the current page, each 0-100."""

    anticipation_level: float
    regret_factor: float
    satisfaction_score: float
    purchase_urgency: float


@dataclass(frozen=True)
class NavigationView:
    """Everything a client needs to render the reader's current position."""

    page: Page
    choices: tuple[ChoiceEvaluation, ...]
    progress: Progress
    balance: int
    replayed: bool = False
    achievements: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EngagementSnapshot:
    """Derived engagement metrics; safe to recompute or cache."""

    user_id: str
    stories_read: int
    choices_made: int
    premium_purchases: int
    avg_session_seconds: float
    engagement_score: float
    churn_risk: ChurnRisk


@dataclass(frozen=True)
class StoryReaderStats:
    """Reader counts for one story, limited to readers active in a window."""

    story_id: str
    total_readers: int
    completed_readers: int
    paying_readers: int
    avg_reading_seconds: float


@dataclass(frozen=True)
class ChoiceStats:
    """Committed selections of one choice within a window."""

    choice_id: str
    selections: int
    unique_readers: int
    paid_selections: int
    paying_readers: int


@dataclass(frozen=True)
class ChoicePopularity:
    choice_id: str
    text: str
    selections: int
    unique_readers: int


@dataclass(frozen=True)
class ContentPerformance:
    """Story-level reach and conversion; rates are fractions in [0, 1]."""

    story_id: str
    title: str
    window_days: int
    total_readers: int
    completion_rate: float
    premium_conversion_rate: float
    avg_reading_seconds: float
    popular_choices: tuple[ChoicePopularity, ...]


@dataclass(frozen=True)
class PremiumChoiceAnalytics:
    """How often readers who reached a premium choice paid for it."""

    choice_id: str
    from_page_id: str
    text: str
    cost: int
    readers_reached: int
    paying_readers: int
    conversion_rate: float
    revenue: int
