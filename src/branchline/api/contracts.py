"""Typed contracts shared by API handlers and Python interfaces."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,199}$")


class ContractModel(BaseModel):
    """Base model config used by all API contracts."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _validate_idempotency_key(value: str) -> str:
    if not IDEMPOTENCY_KEY_PATTERN.match(value):
        raise ValueError(
            f"idempotency_key must match `{IDEMPOTENCY_KEY_PATTERN.pattern}`."
        )
    return value


class AdvanceRequest(ContractModel):
    """Follow one outgoing choice from the current page."""

    choice_id: str = Field(min_length=1, max_length=120)
    idempotency_key: str | None = Field(default=None, max_length=200)

    @field_validator("choice_id")
    @classmethod
    def _normalize_choice_id(cls, value: str) -> str:
        return value.lower()

    @field_validator("idempotency_key")
    @classmethod
    def _check_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_idempotency_key(value)


class CreditRequest(ContractModel):
    """Payment-webhook credit for one reader."""

    user_id: str = Field(min_length=1, max_length=200)
    amount: int = Field(gt=0, le=1_000_000)
    reason: str = Field(min_length=1, max_length=120)
    idempotency_key: str = Field(min_length=1, max_length=200)

    @field_validator("idempotency_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        return _validate_idempotency_key(value)


class ErrorDetail(ContractModel):
    kind: str
    message: str


class ErrorResponse(ContractModel):
    detail: ErrorDetail


class PageResponse(ContractModel):
    page_id: str
    page_number: int
    content: str
    kind: Literal["story", "choice", "ending"]
    is_ending: bool


class ChoiceOptionResponse(ContractModel):
    """Outgoing choice plus the reader-specific gate decision."""

    choice_id: str
    to_page_id: str
    text: str
    is_premium: bool
    cost: int
    accessible: bool
    requires_purchase: bool
    reason: str


class ProgressResponse(ContractModel):
    story_id: str
    current_page_id: str
    visited_history: list[str]
    purchased_choice_ids: list[str]
    pages_seen: list[str]
    is_completed: bool
    version: int
    started_at_utc: str
    last_read_at_utc: str
    completed_at_utc: str | None
    achievements: list[str]


class TensionResponse(ContractModel):
    anticipation_level: float
    regret_factor: float
    satisfaction_score: float
    purchase_urgency: float


class NavigationResponse(ContractModel):
    """Reader position, available choices, and wallet balance."""

    page: PageResponse
    choices: list[ChoiceOptionResponse]
    progress: ProgressResponse
    tension: TensionResponse
    balance: int
    replayed: bool


class StorySummaryResponse(ContractModel):
    story_id: str
    title: str
    version: int
    start_page_id: str
    page_count: int


class WalletResponse(ContractModel):
    user_id: str
    balance: int


class LedgerEntryResponse(ContractModel):
    entry_id: str
    delta: int
    reason: str
    related_choice_id: str | None
    idempotency_key: str
    balance_after: int
    created_at_utc: str


class CreditResponse(ContractModel):
    user_id: str
    entry: LedgerEntryResponse


class EngagementResponse(ContractModel):
    user_id: str
    stories_read: int
    choices_made: int
    premium_purchases: int
    avg_session_seconds: float
    engagement_score: float
    churn_risk: Literal["low", "medium", "high"]


class ChoicePopularityResponse(ContractModel):
    choice_id: str
    text: str
    selections: int
    unique_readers: int


class ContentPerformanceResponse(ContractModel):
    """Story reach and conversion over the trailing ``window_days``."""

    story_id: str
    title: str
    window_days: int
    total_readers: int
    completion_rate: float
    premium_conversion_rate: float
    avg_reading_seconds: float
    popular_choices: list[ChoicePopularityResponse]


class PremiumChoiceAnalyticsResponse(ContractModel):
    choice_id: str
    from_page_id: str
    text: str
    cost: int
    readers_reached: int
    paying_readers: int
    conversion_rate: float
    revenue: int
