"""Navigation state machine: resume, advance, go back, and restart.

Each mutating operation is one store transaction under a per-(user, story)
lock. A purchase debit joins that transaction, so the page move and the charge
commit together or neither does.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from branchline.application.ledger import CurrencyLedger
from branchline.application.transactions import KeyedLocks, run_transaction
from branchline.core.analytics import EventTracker, ReaderEvent
from branchline.core.choice_evaluator import evaluate_page
from branchline.core.engagement import PURCHASE_REASON, progress_achievements
from branchline.domain.errors import (
    AtStart,
    DuplicateIdempotencyKeyConflict,
    InvalidTransition,
    NotFound,
)
from branchline.domain.models import (
    Choice,
    ChoiceEvent,
    LedgerEntry,
    NavigationReceipt,
    NavigationView,
    Progress,
    StoryGraph,
)
from branchline.domain.ports import ReaderStore, ReaderTransaction, StoryGraphSource

logger = logging.getLogger(__name__)


class RestartPolicy(str, Enum):
    """What happens to paid unlocks when a reader restarts a story."""

    FORFEIT_UNLOCKS = "forfeit_unlocks"
    KEEP_UNLOCKS = "keep_unlocks"


@dataclass(frozen=True)
class _AdvanceOutcome:
    progress: Progress
    balance: int
    replayed: bool
    entry: LedgerEntry | None = None
    newly_completed: bool = False


def _utc_now() -> datetime:
    return datetime.now(UTC)


class NavigationService:
    """Moves readers through story graphs as all-or-nothing transactions."""

    def __init__(
        self,
        *,
        graphs: StoryGraphSource,
        store: ReaderStore,
        ledger: CurrencyLedger,
        restart_policy: RestartPolicy = RestartPolicy.FORFEIT_UNLOCKS,
        tracker: EventTracker | None = None,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._graphs = graphs
        self._store = store
        self._ledger = ledger
        self._restart_policy = restart_policy
        self._tracker = tracker
        self._locks = locks or KeyedLocks()
        self._clock = clock

    @property
    def restart_policy(self) -> RestartPolicy:
        return self._restart_policy

    def resume(self, user_id: str, story_id: str) -> NavigationView:
        """Read-only view of the reader's position; nothing is created."""
        graph = self._graphs.get_graph(story_id)
        progress = self._store.get_progress(user_id=user_id, story_id=story_id)
        if progress is None:
            progress = Progress.initial(
                user_id=user_id,
                story_id=story_id,
                start_page_id=graph.start_page_id,
                now=self._clock(),
            )
        return self._view(graph, progress, balance=self._current_balance(user_id))

    def advance(
        self,
        user_id: str,
        story_id: str,
        choice_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> NavigationView:
        """Follow ``choice_id`` from the current page, buying it first when gated.

        Replaying an already applied ``idempotency_key`` charges nothing and
        returns the reader's current position with ``replayed=True``. If the
        reader has moved on since, that is the later page, not the page the
        original request landed on.
        """
        graph = self._graphs.get_graph(story_id)
        choice = graph.choices.get(choice_id)
        if choice is None:
            raise NotFound(f"Choice '{choice_id}' not found in story '{story_id}'.")

        with self._locks.hold((user_id, story_id)):
            outcome = run_transaction(
                self._store,
                lambda transaction: self._advance_within(
                    transaction,
                    graph=graph,
                    user_id=user_id,
                    choice=choice,
                    idempotency_key=idempotency_key,
                ),
                policy=self._ledger.retry_policy,
                label="navigation.advance",
            )

        if outcome.replayed:
            logger.info(
                "navigation.advance_replayed user_id=%s story_id=%s choice_id=%s",
                user_id,
                story_id,
                choice_id,
            )
        else:
            logger.info(
                "navigation.advance user_id=%s story_id=%s choice_id=%s page_id=%s paid=%s",
                user_id,
                story_id,
                choice_id,
                outcome.progress.current_page_id,
                outcome.entry is not None,
            )
            self._emit_advance(choice=choice, outcome=outcome)
        return self._view(graph, outcome.progress, balance=outcome.balance, replayed=outcome.replayed)

    def go_back(self, user_id: str, story_id: str) -> NavigationView:
        """Unwind the last history entry; the ledger is never touched."""
        graph = self._graphs.get_graph(story_id)
        with self._locks.hold((user_id, story_id)):
            progress = run_transaction(
                self._store,
                lambda transaction: self._go_back_within(
                    transaction, graph=graph, user_id=user_id
                ),
                policy=self._ledger.retry_policy,
                label="navigation.go_back",
            )
        logger.info(
            "navigation.go_back user_id=%s story_id=%s page_id=%s",
            user_id,
            story_id,
            progress.current_page_id,
        )
        self._track("go_back", progress)
        self._track("page_view", progress)
        return self._view(graph, progress, balance=self._current_balance(user_id))

    def restart(self, user_id: str, story_id: str) -> NavigationView:
        """Return to the start page and clear history; balances are untouched."""
        graph = self._graphs.get_graph(story_id)
        with self._locks.hold((user_id, story_id)):
            progress = run_transaction(
                self._store,
                lambda transaction: self._restart_within(
                    transaction, graph=graph, user_id=user_id
                ),
                policy=self._ledger.retry_policy,
                label="navigation.restart",
            )
        logger.info(
            "navigation.restart user_id=%s story_id=%s policy=%s kept_unlocks=%s",
            user_id,
            story_id,
            self._restart_policy.value,
            len(progress.purchased_choice_ids),
        )
        self._track("restart", progress)
        return self._view(graph, progress, balance=self._current_balance(user_id))

    def _advance_within(
        self,
        transaction: ReaderTransaction,
        *,
        graph: StoryGraph,
        user_id: str,
        choice: Choice,
        idempotency_key: str | None,
    ) -> _AdvanceOutcome:
        stored = transaction.load_progress(user_id=user_id, story_id=graph.story_id)
        now = self._clock()
        progress = stored or Progress.initial(
            user_id=user_id, story_id=graph.story_id, start_page_id=graph.start_page_id, now=now
        )
        key = idempotency_key or f"{choice.choice_id}:{user_id}:{progress.version}"
        balance = self._ledger.ensure_account_within(transaction, user_id=user_id)

        receipt = transaction.find_receipt(user_id=user_id, idempotency_key=key)
        if receipt is not None:
            if (receipt.story_id, receipt.choice_id) != (graph.story_id, choice.choice_id):
                logger.error(
                    "navigation.idempotency_conflict key=%s user_id=%s story_id=%s choice_id=%s",
                    key,
                    user_id,
                    graph.story_id,
                    choice.choice_id,
                )
                raise DuplicateIdempotencyKeyConflict(
                    idempotency_key=key, detail="a different navigation request"
                )
            return _AdvanceOutcome(progress=progress, balance=balance, replayed=True)

        if choice.from_page_id != progress.current_page_id:
            raise InvalidTransition(
                f"Choice '{choice.choice_id}' leaves page '{choice.from_page_id}' "
                f"but the reader is on '{progress.current_page_id}'."
            )
        current_page = graph.pages[progress.current_page_id]
        evaluations = evaluate_page(
            current_page,
            graph.outgoing_choices(current_page.page_id),
            progress=progress,
            balance=balance,
        )
        evaluation = next(
            (item for item in evaluations if item.choice.choice_id == choice.choice_id), None
        )
        if evaluation is None:
            raise NotFound(
                f"Choice '{choice.choice_id}' is not offered on page '{current_page.page_id}'."
            )

        entry = None
        if evaluation.requires_purchase:
            entry = self._ledger.debit_within(
                transaction,
                user_id=user_id,
                amount=choice.cost,
                reason=PURCHASE_REASON,
                related_choice_id=choice.choice_id,
                idempotency_key=f"purchase:{key}",
            )

        completed = not graph.outgoing.get(choice.to_page_id)
        moved = progress.moved_to(
            page_id=choice.to_page_id,
            now=now,
            purchased_choice_id=choice.choice_id if entry is not None else None,
            completed=completed,
        )
        saved = transaction.save_progress(
            moved, expected_version=stored.version if stored is not None else None
        )
        transaction.record_choice_event(
            ChoiceEvent(
                event_id=uuid4().hex,
                user_id=user_id,
                story_id=graph.story_id,
                choice_id=choice.choice_id,
                from_page_id=choice.from_page_id,
                to_page_id=choice.to_page_id,
                paid=entry is not None,
                created_at=now,
            )
        )
        transaction.record_receipt(
            NavigationReceipt(
                idempotency_key=key,
                user_id=user_id,
                story_id=graph.story_id,
                choice_id=choice.choice_id,
                to_page_id=choice.to_page_id,
                progress_version=saved.version,
                created_at=now,
            )
        )
        balance_after = transaction.get_balance(user_id=user_id)
        assert balance_after is not None
        return _AdvanceOutcome(
            progress=saved,
            balance=balance_after,
            replayed=False,
            entry=entry,
            newly_completed=completed and not progress.is_completed,
        )

    def _go_back_within(
        self, transaction: ReaderTransaction, *, graph: StoryGraph, user_id: str
    ) -> Progress:
        progress = transaction.load_progress(user_id=user_id, story_id=graph.story_id)
        if progress is None or not progress.visited_history:
            raise AtStart(f"Reader {user_id} is already at the start of '{graph.story_id}'.")
        history = progress.visited_history[:-1]
        target = history[-1] if history else graph.start_page_id
        if target not in graph.pages:
            raise NotFound(f"Page '{target}' not found in story '{graph.story_id}'.")
        rewound = replace(
            progress,
            current_page_id=target,
            visited_history=history,
            last_read_at=self._clock(),
        )
        return transaction.save_progress(rewound, expected_version=progress.version)

    def _restart_within(
        self, transaction: ReaderTransaction, *, graph: StoryGraph, user_id: str
    ) -> Progress:
        now = self._clock()
        progress = transaction.load_progress(user_id=user_id, story_id=graph.story_id)
        if progress is None:
            fresh = Progress.initial(
                user_id=user_id,
                story_id=graph.story_id,
                start_page_id=graph.start_page_id,
                now=now,
            )
            return transaction.save_progress(fresh, expected_version=None)
        keep = self._restart_policy is RestartPolicy.KEEP_UNLOCKS
        reset = replace(
            progress,
            current_page_id=graph.start_page_id,
            visited_history=(),
            purchased_choice_ids=progress.purchased_choice_ids if keep else frozenset(),
            pages_seen=(graph.start_page_id,),
            is_completed=False,
            completed_at=None,
            last_read_at=now,
        )
        return transaction.save_progress(reset, expected_version=progress.version)

    def _current_balance(self, user_id: str) -> int:
        return self._ledger.peek_balance(user_id)

    def _view(
        self,
        graph: StoryGraph,
        progress: Progress,
        *,
        balance: int,
        replayed: bool = False,
    ) -> NavigationView:
        page = graph.pages.get(progress.current_page_id)
        if page is None:
            raise NotFound(
                f"Page '{progress.current_page_id}' not found in story '{graph.story_id}'."
            )
        return NavigationView(
            page=page,
            choices=evaluate_page(
                page,
                graph.outgoing_choices(page.page_id),
                progress=progress,
                balance=balance,
            ),
            progress=progress,
            balance=balance,
            replayed=replayed,
            achievements=progress_achievements(progress),
        )

    def _emit_advance(self, *, choice: Choice, outcome: _AdvanceOutcome) -> None:
        progress = outcome.progress
        self._track("choice_made", progress, choice_id=choice.choice_id)
        if outcome.entry is not None:
            self._track(
                "purchase",
                progress,
                choice_id=choice.choice_id,
                metadata={"cost": choice.cost, "balance_after": outcome.entry.balance_after},
            )
        self._track("page_view", progress, choice_id=choice.choice_id)
        if outcome.newly_completed:
            self._track("story_completed", progress, choice_id=choice.choice_id)

    def _track(
        self,
        event_type: str,
        progress: Progress,
        *,
        choice_id: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        if self._tracker is None:
            return
        self._tracker.track(
            ReaderEvent(
                type=event_type,  # type: ignore[arg-type]
                user_id=progress.user_id,
                story_id=progress.story_id,
                page_id=progress.current_page_id,
                choice_id=choice_id,
                metadata={"pages_seen": len(progress.pages_seen), **(metadata or {})},
            )
        )
