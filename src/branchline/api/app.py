"""FastAPI reader application: navigation, wallet, and engagement endpoints."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal

import httpx
import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from branchline.adapters.sqlite_reader_store import SQLiteReaderStore
from branchline.api.contracts import (
    AdvanceRequest,
    ChoiceOptionResponse,
    ChoicePopularityResponse,
    ContentPerformanceResponse,
    CreditRequest,
    CreditResponse,
    EngagementResponse,
    ErrorResponse,
    LedgerEntryResponse,
    NavigationResponse,
    PageResponse,
    PremiumChoiceAnalyticsResponse,
    ProgressResponse,
    StorySummaryResponse,
    TensionResponse,
    WalletResponse,
)
from branchline.api.oidc import OidcTokenValidator
from branchline.application.engagement import EngagementAggregator
from branchline.application.ledger import CurrencyLedger
from branchline.application.navigation import NavigationService, RestartPolicy
from branchline.application.story_analytics import StoryAnalytics
from branchline.application.transactions import KeyedLocks
from branchline.core.analytics import EventTracker
from branchline.core.choice_evaluator import tension_metrics
from branchline.core.engagement import EngagementPolicy
from branchline.core.retry import RetryPolicy
from branchline.core.story_graph import StoryGraphStore
from branchline.domain.errors import BranchlineError
from branchline.domain.models import LedgerEntry, NavigationView
from branchline.settings import ReaderSettings, load_settings

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "at_start": status.HTTP_409_CONFLICT,
    "insufficient_funds": status.HTTP_402_PAYMENT_REQUIRED,
    "idempotency_conflict": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "invalid_amount": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "persistence": status.HTTP_503_SERVICE_UNAVAILABLE,
}
ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    code: {"model": ErrorResponse} for code in sorted(set(ERROR_STATUS.values()))
}


class HealthResponse(BaseModel):
    """Simple health payload for liveness checks."""

    status: Literal["ok"] = "ok"
    service: str = "branchline"


def _entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        entry_id=entry.entry_id,
        delta=entry.delta,
        reason=entry.reason,
        related_choice_id=entry.related_choice_id,
        idempotency_key=entry.idempotency_key,
        balance_after=entry.balance_after,
        created_at_utc=entry.created_at.isoformat(),
    )


def _navigation_response(view: NavigationView) -> NavigationResponse:
    progress = view.progress
    tension = tension_metrics(view.choices, progress=progress)
    return NavigationResponse(
        page=PageResponse(
            page_id=view.page.page_id,
            page_number=view.page.page_number,
            content=view.page.content,
            kind=view.page.kind.value,
            is_ending=view.page.is_ending,
        ),
        choices=[
            ChoiceOptionResponse(
                choice_id=item.choice.choice_id,
                to_page_id=item.choice.to_page_id,
                text=item.choice.text,
                is_premium=item.choice.is_premium,
                cost=item.choice.cost,
                accessible=item.accessible,
                requires_purchase=item.requires_purchase,
                reason=item.reason,
            )
            for item in view.choices
        ],
        progress=ProgressResponse(
            story_id=progress.story_id,
            current_page_id=progress.current_page_id,
            visited_history=list(progress.visited_history),
            purchased_choice_ids=sorted(progress.purchased_choice_ids),
            pages_seen=list(progress.pages_seen),
            is_completed=progress.is_completed,
            version=progress.version,
            started_at_utc=progress.started_at.isoformat(),
            last_read_at_utc=progress.last_read_at.isoformat(),
            completed_at_utc=progress.completed_at.isoformat() if progress.completed_at else None,
            achievements=list(view.achievements),
        ),
        tension=TensionResponse(
            anticipation_level=tension.anticipation_level,
            regret_factor=tension.regret_factor,
            satisfaction_score=tension.satisfaction_score,
            purchase_urgency=tension.purchase_urgency,
        ),
        balance=view.balance,
        replayed=view.replayed,
    )


def create_app(
    db_path: Path | None = None,
    story_dir: Path | None = None,
    *,
    settings: ReaderSettings | None = None,
    tracker: EventTracker | None = None,
    token_validator: OidcTokenValidator | None = None,
) -> FastAPI:
    """Create the API application."""
    effective = settings or load_settings()
    effective_db_path = db_path or effective.db_path
    effective_story_dir = story_dir or effective.story_dir

    store = SQLiteReaderStore(db_path=effective_db_path)
    graphs = StoryGraphStore()
    loaded = graphs.load_directory(effective_story_dir)
    retry_policy = RetryPolicy(
        attempts=effective.retry_attempts,
        base_delay_seconds=effective.retry_base_delay_ms / 1000,
        max_delay_seconds=effective.retry_max_delay_ms / 1000,
    )
    locks = KeyedLocks()
    ledger = CurrencyLedger(
        store,
        starting_balance=effective.starting_balance,
        retry_policy=retry_policy,
        locks=locks,
    )
    event_tracker = tracker or EventTracker(max_events=effective.analytics_buffer_size)
    navigation = NavigationService(
        graphs=graphs,
        store=store,
        ledger=ledger,
        restart_policy=(
            RestartPolicy.KEEP_UNLOCKS
            if effective.restart_keeps_unlocks
            else RestartPolicy.FORFEIT_UNLOCKS
        ),
        tracker=event_tracker,
        locks=locks,
    )
    story_analytics = StoryAnalytics(graphs=graphs, store=store)
    engagement = EngagementAggregator(
        store,
        policy=EngagementPolicy(session_idle_gap_seconds=effective.session_idle_gap_seconds),
        cache_ttl_seconds=effective.engagement_cache_ttl_seconds,
    )
    validator = token_validator or OidcTokenValidator(effective.oidc)
    bearer = HTTPBearer(auto_error=False)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        flushed = event_tracker.flush()
        logger.info("api.stop analytics_flushed=%s", flushed)

    app = FastAPI(
        title="branchline API",
        version="0.1.0",
        description=(
            "Reader navigation through branching stories with premium choice gating, "
            "an idempotent currency ledger, and engagement snapshots."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "system", "description": "Service health and runtime metadata."},
            {"name": "stories", "description": "Story catalog and reader navigation."},
            {"name": "wallet", "description": "Balances, ledger history, and webhook credits."},
            {"name": "engagement", "description": "Derived engagement snapshots."},
            {"name": "analytics", "description": "Story performance for analytics admins."},
        ],
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(effective.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.graphs = graphs
    app.state.ledger = ledger
    app.state.navigation = navigation
    app.state.engagement = engagement
    app.state.story_analytics = story_analytics
    app.state.tracker = event_tracker

    logger.info(
        "api.start db_path=%s story_dir=%s stories=%s restart_policy=%s",
        effective_db_path,
        effective_story_dir,
        loaded,
        navigation.restart_policy.value,
    )

    @app.exception_handler(BranchlineError)
    async def branchline_error(_: Request, exc: BranchlineError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST)
        if status_code >= 500:
            logger.error("api.error kind=%s message=%s", exc.kind, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"detail": {"kind": exc.kind, "message": exc.message}},
        )

    def current_reader(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> str:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
            )
        try:
            claims = validator.validate(credentials.credentials)
        except (jwt.PyJWTError, httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("auth.rejected error=%s", exc)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
            ) from exc
        return claims.subject

    def analytics_admin(user_id: str = Depends(current_reader)) -> str:
        if user_id not in effective.analytics_admins:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Analytics admin access required",
            )
        return user_id

    def require_webhook_secret(
        x_webhook_secret: str | None = Header(default=None),
    ) -> None:
        expected = effective.credit_webhook_secret
        if not expected:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Credit webhook is not configured",
            )
        if x_webhook_secret is None or not hmac.compare_digest(
            x_webhook_secret.encode("utf-8"), expected.encode("utf-8")
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook secret",
            )

    @app.get("/healthz", response_model=HealthResponse, tags=["system"])
    def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/api/v1/stories", response_model=list[StorySummaryResponse], tags=["stories"])
    def list_stories() -> list[StorySummaryResponse]:
        summaries: list[StorySummaryResponse] = []
        for story_id in graphs.story_ids():
            graph = graphs.get_graph(story_id)
            summaries.append(
                StorySummaryResponse(
                    story_id=graph.story_id,
                    title=graph.title,
                    version=graph.version,
                    start_page_id=graph.start_page_id,
                    page_count=len(graph.pages),
                )
            )
        return summaries

    @app.get(
        "/api/v1/stories/{story_id}/progress",
        response_model=NavigationResponse,
        responses=ERROR_RESPONSES,
        tags=["stories"],
    )
    def resume(story_id: str, user_id: str = Depends(current_reader)) -> NavigationResponse:
        return _navigation_response(navigation.resume(user_id, story_id))

    @app.post(
        "/api/v1/stories/{story_id}/advance",
        response_model=NavigationResponse,
        responses=ERROR_RESPONSES,
        tags=["stories"],
    )
    def advance(
        story_id: str,
        payload: AdvanceRequest,
        user_id: str = Depends(current_reader),
    ) -> NavigationResponse:
        view = navigation.advance(
            user_id,
            story_id,
            payload.choice_id,
            idempotency_key=payload.idempotency_key,
        )
        engagement.invalidate(user_id)
        return _navigation_response(view)

    @app.post(
        "/api/v1/stories/{story_id}/back",
        response_model=NavigationResponse,
        responses=ERROR_RESPONSES,
        tags=["stories"],
    )
    def go_back(story_id: str, user_id: str = Depends(current_reader)) -> NavigationResponse:
        return _navigation_response(navigation.go_back(user_id, story_id))

    @app.post(
        "/api/v1/stories/{story_id}/restart",
        response_model=NavigationResponse,
        responses=ERROR_RESPONSES,
        tags=["stories"],
    )
    def restart(story_id: str, user_id: str = Depends(current_reader)) -> NavigationResponse:
        view = navigation.restart(user_id, story_id)
        engagement.invalidate(user_id)
        return _navigation_response(view)

    @app.get("/api/v1/wallet", response_model=WalletResponse, tags=["wallet"])
    def wallet(user_id: str = Depends(current_reader)) -> WalletResponse:
        return WalletResponse(user_id=user_id, balance=ledger.get_balance(user_id))

    @app.get(
        "/api/v1/wallet/entries", response_model=list[LedgerEntryResponse], tags=["wallet"]
    )
    def wallet_entries(
        limit: int = Query(default=100, ge=1, le=500),
        user_id: str = Depends(current_reader),
    ) -> list[LedgerEntryResponse]:
        return [_entry_response(entry) for entry in ledger.history(user_id, limit=limit)]

    @app.post(
        "/api/v1/wallet/credits",
        response_model=CreditResponse,
        responses=ERROR_RESPONSES,
        tags=["wallet"],
        status_code=201,
        dependencies=[Depends(require_webhook_secret)],
    )
    def credit(payload: CreditRequest) -> CreditResponse:
        entry = ledger.credit(
            payload.user_id, payload.amount, payload.reason, payload.idempotency_key
        )
        return CreditResponse(user_id=payload.user_id, entry=_entry_response(entry))

    @app.get("/api/v1/me/engagement", response_model=EngagementResponse, tags=["engagement"])
    def my_engagement(user_id: str = Depends(current_reader)) -> EngagementResponse:
        snapshot = engagement.compute_snapshot(user_id)
        return EngagementResponse(
            user_id=snapshot.user_id,
            stories_read=snapshot.stories_read,
            choices_made=snapshot.choices_made,
            premium_purchases=snapshot.premium_purchases,
            avg_session_seconds=snapshot.avg_session_seconds,
            engagement_score=snapshot.engagement_score,
            churn_risk=snapshot.churn_risk,
        )

    @app.get(
        "/api/v1/analytics/stories/{story_id}/performance",
        response_model=ContentPerformanceResponse,
        responses=ERROR_RESPONSES,
        tags=["analytics"],
        dependencies=[Depends(analytics_admin)],
    )
    def content_performance(
        story_id: str,
        days: int = Query(default=30, ge=1, le=365),
    ) -> ContentPerformanceResponse:
        performance = story_analytics.content_performance(story_id, days=days)
        return ContentPerformanceResponse(
            story_id=performance.story_id,
            title=performance.title,
            window_days=performance.window_days,
            total_readers=performance.total_readers,
            completion_rate=performance.completion_rate,
            premium_conversion_rate=performance.premium_conversion_rate,
            avg_reading_seconds=performance.avg_reading_seconds,
            popular_choices=[
                ChoicePopularityResponse(
                    choice_id=item.choice_id,
                    text=item.text,
                    selections=item.selections,
                    unique_readers=item.unique_readers,
                )
                for item in performance.popular_choices
            ],
        )

    @app.get(
        "/api/v1/analytics/stories/{story_id}/premium-choices",
        response_model=list[PremiumChoiceAnalyticsResponse],
        responses=ERROR_RESPONSES,
        tags=["analytics"],
        dependencies=[Depends(analytics_admin)],
    )
    def premium_choices(
        story_id: str,
        days: int = Query(default=30, ge=1, le=365),
    ) -> list[PremiumChoiceAnalyticsResponse]:
        return [
            PremiumChoiceAnalyticsResponse(
                choice_id=item.choice_id,
                from_page_id=item.from_page_id,
                text=item.text,
                cost=item.cost,
                readers_reached=item.readers_reached,
                paying_readers=item.paying_readers,
                conversion_rate=item.conversion_rate,
                revenue=item.revenue,
            )
            for item in story_analytics.premium_choice_analytics(story_id, days=days)
        ]

    return app


app = create_app()
