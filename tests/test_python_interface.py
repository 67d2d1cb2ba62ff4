from __future__ import annotations

from typing import Any

import httpx
import pytest

from branchline.api.contracts import CreditRequest
from branchline.api.python_interface import ReaderApiClient, ReaderApiError


def _navigation_payload(*, page_id: str = "stairs", replayed: bool = False) -> dict[str, Any]:
    return {
        "page": {
            "page_id": page_id,
            "page_number": 2,
            "content": "A spiral stair.",
            "kind": "story",
            "is_ending": False,
        },
        "choices": [
            {
                "choice_id": "climb",
                "to_page_id": "lamp-room",
                "text": "Keep climbing",
                "is_premium": False,
                "cost": 0,
                "accessible": True,
                "requires_purchase": False,
                "reason": "free",
            }
        ],
        "progress": {
            "story_id": "lighthouse",
            "current_page_id": page_id,
            "visited_history": [page_id],
            "purchased_choice_ids": [],
            "pages_seen": ["start", page_id],
            "is_completed": False,
            "version": 1,
            "started_at_utc": "2026-03-01T09:00:00+00:00",
            "last_read_at_utc": "2026-03-01T09:00:00+00:00",
            "completed_at_utc": None,
            "achievements": [],
        },
        "tension": {
            "anticipation_level": 0.0,
            "regret_factor": 0.0,
            "satisfaction_score": 12.0,
            "purchase_urgency": 0.0,
        },
        "balance": 20,
        "replayed": replayed,
    }


def test_client_normalizes_base_url() -> None:
    client = ReaderApiClient(api_base_url="http://127.0.0.1:8000/")
    assert client.api_base_url == "http://127.0.0.1:8000"
    assert client.session("token-1").api_base_url == "http://127.0.0.1:8000"


def test_advance_sends_choice_and_bearer_token(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def fake_post(url: str, json: object, headers: dict[str, str], timeout: float) -> httpx.Response:
        seen.update(url=url, json=json, headers=headers)
        return httpx.Response(
            status_code=200,
            request=httpx.Request("POST", url),
            json=_navigation_payload(replayed=True),
        )

    monkeypatch.setattr("branchline.api.python_interface.httpx.post", fake_post)
    client = ReaderApiClient(api_base_url="http://127.0.0.1:8000")
    view = client.advance(
        session=client.session("token-1"),
        story_id="lighthouse",
        choice_id="Take-Stairs",
        idempotency_key="tap-1",
    )
    assert seen["url"] == "http://127.0.0.1:8000/api/v1/stories/lighthouse/advance"
    assert seen["json"] == {"choice_id": "take-stairs", "idempotency_key": "tap-1"}
    assert seen["headers"] == {"Authorization": "Bearer token-1"}
    assert view.page.page_id == "stairs"
    assert view.replayed


def test_structured_errors_become_reader_api_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, headers: dict[str, str], timeout: float) -> httpx.Response:
        return httpx.Response(
            status_code=402,
            request=httpx.Request("GET", url),
            json={"detail": {"kind": "insufficient_funds", "message": "need 15"}},
        )

    monkeypatch.setattr("branchline.api.python_interface.httpx.get", fake_get)
    client = ReaderApiClient()
    with pytest.raises(ReaderApiError) as excinfo:
        client.resume(session=client.session("token-1"), story_id="lighthouse")
    assert excinfo.value.status_code == 402
    assert excinfo.value.kind == "insufficient_funds"
    assert excinfo.value.message == "need 15"


def test_plain_http_errors_keep_status(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, headers: dict[str, str], timeout: float) -> httpx.Response:
        return httpx.Response(
            status_code=401,
            request=httpx.Request("GET", url),
            json={"detail": "Missing bearer token"},
        )

    monkeypatch.setattr("branchline.api.python_interface.httpx.get", fake_get)
    client = ReaderApiClient()
    with pytest.raises(ReaderApiError, match="Missing bearer token") as excinfo:
        client.wallet(session=client.session("bad"))
    assert excinfo.value.kind == "http_error"


def test_post_credit_uses_webhook_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def fake_post(url: str, json: object, headers: dict[str, str], timeout: float) -> httpx.Response:
        seen.update(url=url, headers=headers)
        return httpx.Response(
            status_code=201,
            request=httpx.Request("POST", url),
            json={
                "user_id": "reader-1",
                "entry": {
                    "entry_id": "e1",
                    "delta": 50,
                    "reason": "coin_pack",
                    "related_choice_id": None,
                    "idempotency_key": "checkout-9",
                    "balance_after": 70,
                    "created_at_utc": "2026-03-01T09:00:00+00:00",
                },
            },
        )

    monkeypatch.setattr("branchline.api.python_interface.httpx.post", fake_post)
    response = ReaderApiClient().post_credit(
        webhook_secret="hook",
        request=CreditRequest(
            user_id="reader-1", amount=50, reason="coin_pack", idempotency_key="checkout-9"
        ),
    )
    assert seen["url"].endswith("/api/v1/wallet/credits")
    assert seen["headers"] == {"X-Webhook-Secret": "hook"}
    assert response.entry.balance_after == 70
