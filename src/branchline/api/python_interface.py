"""Python-first client for the reader HTTP API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from branchline.api.contracts import (
    AdvanceRequest,
    CreditRequest,
    CreditResponse,
    EngagementResponse,
    LedgerEntryResponse,
    NavigationResponse,
    StorySummaryResponse,
    WalletResponse,
)


@dataclass(frozen=True)
class AuthSession:
    """Reader session bound to an OIDC access token."""

    access_token: str
    api_base_url: str


class ReaderApiError(RuntimeError):
    """Structured API failure; ``kind`` mirrors the server error kind."""

    def __init__(self, *, status_code: int, kind: str, message: str) -> None:
        super().__init__(f"{status_code} {kind}: {message}")
        self.status_code = status_code
        self.kind = kind
        self.message = message


def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    kind = "http_error"
    message = response.text
    try:
        detail: Any = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, dict):
        kind = str(detail.get("kind", kind))
        message = str(detail.get("message", message))
    elif isinstance(detail, str):
        message = detail
    raise ReaderApiError(status_code=response.status_code, kind=kind, message=message)


class ReaderApiClient:
    """Tiny typed API client for Python users."""

    def __init__(self, api_base_url: str = "http://127.0.0.1:8000") -> None:
        """Initialize client with an API base URL."""
        self._api_base_url = api_base_url.rstrip("/")

    @property
    def api_base_url(self) -> str:
        """Return normalized API base URL."""
        return self._api_base_url

    def session(self, access_token: str) -> AuthSession:
        return AuthSession(access_token=access_token, api_base_url=self._api_base_url)

    def list_stories(self) -> list[StorySummaryResponse]:
        response = httpx.get(f"{self._api_base_url}/api/v1/stories", timeout=30.0)
        _raise_for_error(response)
        return [StorySummaryResponse.model_validate(item) for item in response.json()]

    def resume(self, *, session: AuthSession, story_id: str) -> NavigationResponse:
        """Fetch the reader's current page without changing anything."""
        response = httpx.get(
            f"{session.api_base_url}/api/v1/stories/{story_id}/progress",
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return NavigationResponse.model_validate(response.json())

    def advance(
        self,
        *,
        session: AuthSession,
        story_id: str,
        choice_id: str,
        idempotency_key: str | None = None,
    ) -> NavigationResponse:
        """Follow a choice; reuse ``idempotency_key`` when retrying the same request."""
        request = AdvanceRequest(choice_id=choice_id, idempotency_key=idempotency_key)
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/advance",
            json=request.model_dump(mode="json"),
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return NavigationResponse.model_validate(response.json())

    def go_back(self, *, session: AuthSession, story_id: str) -> NavigationResponse:
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/back",
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return NavigationResponse.model_validate(response.json())

    def restart(self, *, session: AuthSession, story_id: str) -> NavigationResponse:
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/restart",
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return NavigationResponse.model_validate(response.json())

    def wallet(self, *, session: AuthSession) -> WalletResponse:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/wallet",
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return WalletResponse.model_validate(response.json())

    def wallet_entries(self, *, session: AuthSession, limit: int = 100) -> list[LedgerEntryResponse]:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/wallet/entries",
            params={"limit": limit},
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return [LedgerEntryResponse.model_validate(item) for item in response.json()]

    def engagement(self, *, session: AuthSession) -> EngagementResponse:
        response = httpx.get(
            f"{session.api_base_url}/api/v1/me/engagement",
            headers=_auth_headers(session),
            timeout=30.0,
        )
        _raise_for_error(response)
        return EngagementResponse.model_validate(response.json())

    def post_credit(self, *, webhook_secret: str, request: CreditRequest) -> CreditResponse:
        """Deliver a payment-provider credit through the webhook endpoint."""
        response = httpx.post(
            f"{self._api_base_url}/api/v1/wallet/credits",
            json=request.model_dump(mode="json"),
            headers={"X-Webhook-Secret": webhook_secret},
            timeout=30.0,
        )
        _raise_for_error(response)
        return CreditResponse.model_validate(response.json())


def _auth_headers(session: AuthSession) -> dict[str, str]:
    return {"Authorization": f"Bearer {session.access_token}"}


__all__ = [
    "AuthSession",
    "ReaderApiClient",
    "ReaderApiError",
]
