"""Ports for story content and transactional reader persistence."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from branchline.domain.models import (
    Choice,
    ChoiceEvent,
    ChoiceStats,
    LedgerEntry,
    NavigationReceipt,
    Page,
    Progress,
    StoryGraph,
    StoryReaderStats,
)


class StoryGraphSource(Protocol):
    """Read-only access to immutable story graphs."""

    def get_graph(self, story_id: str) -> StoryGraph:
        ...

    def get_page(self, story_id: str, page_id: str) -> Page:
        ...

    def get_choice(self, story_id: str, choice_id: str) -> Choice:
        ...

    def get_outgoing_choices(self, story_id: str, page_id: str) -> tuple[Choice, ...]:
        ...


class ReaderTransaction(Protocol):
    """Operations that commit or roll back together."""

    def load_progress(self, *, user_id: str, story_id: str) -> Progress | None:
        ...

    def save_progress(self, progress: Progress, *, expected_version: int | None) -> Progress:
        ...

    def get_balance(self, *, user_id: str) -> int | None:
        ...

    def open_account(self, *, user_id: str, opening_balance: int) -> LedgerEntry | None:
        ...

    def find_entry(self, *, user_id: str, idempotency_key: str) -> LedgerEntry | None:
        ...

    def append_entry(
        self,
        *,
        user_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        related_choice_id: str | None,
    ) -> LedgerEntry:
        ...

    def record_choice_event(self, event: ChoiceEvent) -> None:
        ...

    def find_receipt(
        self, *, user_id: str, idempotency_key: str
    ) -> NavigationReceipt | None:
        ...

    def record_receipt(self, receipt: NavigationReceipt) -> None:
        ...


class ReaderStore(Protocol):
    """Transactional persistence for progress and ledger state."""

    transient_errors: tuple[type[Exception], ...]

    def transaction(self) -> AbstractContextManager[ReaderTransaction]:
        ...

    def get_progress(self, *, user_id: str, story_id: str) -> Progress | None:
        ...

    def get_balance(self, *, user_id: str) -> int | None:
        ...

    def list_progress(self, *, user_id: str) -> list[Progress]:
        ...

    def list_entries(self, *, user_id: str, limit: int = 100) -> list[LedgerEntry]:
        ...

    def list_choice_events(self, *, user_id: str) -> list[ChoiceEvent]:
        ...

    def count_entries(self, *, user_id: str, reason: str) -> int:
        ...

    def story_reader_stats(self, *, story_id: str, since: datetime) -> StoryReaderStats:
        ...

    def choice_stats(self, *, story_id: str, since: datetime) -> list[ChoiceStats]:
        ...

    def page_reach(self, *, story_id: str, since: datetime) -> dict[str, int]:
        ...
