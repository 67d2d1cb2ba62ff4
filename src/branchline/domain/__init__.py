"""Domain models, errors, and ports for branching story navigation."""

from branchline.domain.errors import (
    AtStart,
    BranchlineError,
    DuplicateIdempotencyKeyConflict,
    GraphValidationError,
    InsufficientFunds,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    PersistenceError,
)
from branchline.domain.models import (
    Choice,
    ChoiceEvaluation,
    ContentPerformance,
    EngagementSnapshot,
    LedgerEntry,
    NavigationView,
    Page,
    PageKind,
    PremiumChoiceAnalytics,
    Progress,
    StoryGraph,
)
from branchline.domain.ports import ReaderStore, ReaderTransaction, StoryGraphSource

__all__ = [
    "AtStart",
    "BranchlineError",
    "Choice",
    "ChoiceEvaluation",
    "ContentPerformance",
    "DuplicateIdempotencyKeyConflict",
    "EngagementSnapshot",
    "GraphValidationError",
    "InsufficientFunds",
    "InvalidAmount",
    "InvalidTransition",
    "LedgerEntry",
    "NavigationView",
    "NotFound",
    "Page",
    "PageKind",
    "PersistenceError",
    "PremiumChoiceAnalytics",
    "Progress",
    "ReaderStore",
    "ReaderTransaction",
    "StoryGraph",
    "StoryGraphSource",
]
