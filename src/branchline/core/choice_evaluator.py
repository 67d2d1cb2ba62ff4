"""Pure accessibility evaluation for a page's outgoing choices."""

from __future__ import annotations

from collections.abc import Iterable

from branchline.domain.models import (
    Choice,
    ChoiceEvaluation,
    Page,
    PageKind,
    Progress,
    TensionMetrics,
)

REASON_FREE = "free"
REASON_OWNED = "previously_purchased"
REASON_AFFORDABLE = "affordable"
REASON_INSUFFICIENT = "insufficient_funds"


def evaluate_choice(choice: Choice, *, progress: Progress, balance: int) -> ChoiceEvaluation:
    """Classify one choice; never charges or mutates."""
    if not choice.is_premium:
        return ChoiceEvaluation(
            choice=choice, accessible=True, requires_purchase=False, reason=REASON_FREE
        )
    if choice.choice_id in progress.purchased_choice_ids:
        return ChoiceEvaluation(
            choice=choice, accessible=True, requires_purchase=False, reason=REASON_OWNED
        )
    affordable = balance >= choice.cost
    return ChoiceEvaluation(
        choice=choice,
        accessible=affordable,
        requires_purchase=True,
        reason=REASON_AFFORDABLE if affordable else REASON_INSUFFICIENT,
    )


def evaluate_choices(
    choices: Iterable[Choice], *, progress: Progress, balance: int
) -> tuple[ChoiceEvaluation, ...]:
    return tuple(evaluate_choice(choice, progress=progress, balance=balance) for choice in choices)


def evaluate_page(
    page: Page, choices: Iterable[Choice], *, progress: Progress, balance: int
) -> tuple[ChoiceEvaluation, ...]:
    """Evaluate choices for rendering ``page``; ending pages offer none."""
    if page.kind is PageKind.ENDING:
        return ()
    return evaluate_choices(choices, progress=progress, balance=balance)


def tension_metrics(
    evaluations: Iterable[ChoiceEvaluation], *, progress: Progress
) -> TensionMetrics:
    """Summarize premium pressure on the current page."""
    premium = [item for item in evaluations if item.choice.is_premium]
    accessible = [item for item in premium if item.accessible]
    unaffordable = [item for item in premium if item.requires_purchase and not item.accessible]
    progress_ratio = len(progress.pages_seen) / 10
    urgency = min(100.0, len(unaffordable) / len(premium) * 80) if premium else 0.0
    return TensionMetrics(
        anticipation_level=float(min(100, len(accessible) * 30)),
        regret_factor=float(min(100, len(unaffordable) * 25)),
        satisfaction_score=min(100.0, progress_ratio * 60),
        purchase_urgency=urgency,
    )
