"""Typed failures raised by the navigation and ledger services."""

from __future__ import annotations

from typing import ClassVar


class BranchlineError(Exception):
    """Base class; ``kind`` is the stable identifier surfaced to callers."""

    kind: ClassVar[str] = "error"
    retryable: ClassVar[bool] = False
    user_facing: ClassVar[bool] = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(BranchlineError):
    """Missing story, page, or choice."""

    kind = "not_found"


class InvalidTransition(BranchlineError):
    """The request was built from stale client state; resume and retry."""

    kind = "invalid_transition"
    retryable = True


class AtStart(BranchlineError):
    """Go-back requested with no history to unwind."""

    kind = "at_start"
    user_facing = True


class InsufficientFunds(BranchlineError):
    """Balance is below the cost of a debit."""

    kind = "insufficient_funds"
    user_facing = True

    def __init__(self, *, user_id: str, balance: int, required: int) -> None:
        super().__init__(f"User {user_id} has {balance} but {required} is required.")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class InvalidAmount(BranchlineError):
    """Credit or debit amount was not a positive integer."""

    kind = "invalid_amount"


class DuplicateIdempotencyKeyConflict(BranchlineError):
    """An idempotency key was replayed with a different payload."""

    kind = "idempotency_conflict"

    def __init__(self, *, idempotency_key: str, detail: str) -> None:
        super().__init__(f"Idempotency key '{idempotency_key}' reused with {detail}.")
        self.idempotency_key = idempotency_key


class PersistenceError(BranchlineError):
    """Storage failed after bounded retries."""

    kind = "persistence"


class VersionConflict(Exception):
    """Optimistic progress version check failed; the transaction is retried."""


class GraphValidationError(BranchlineError):
    """A story graph violates structural invariants."""

    kind = "graph_invalid"

    def __init__(self, *, story_id: str, issues: list[str]) -> None:
        super().__init__(f"Story '{story_id}' is invalid: " + "; ".join(issues))
        self.story_id = story_id
        self.issues = issues
