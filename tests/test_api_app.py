from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jwt
import pytest
from conftest import lighthouse_payload
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from branchline.api.app import create_app
from branchline.core.story_schema import StoryGraphDocument, save_story_graph_json

ISSUER = "https://id.example.test/realms/branchline"
AUDIENCE = "branchline_api"
WEBHOOK_SECRET = "hook-secret-123"


def _oidc_token_and_jwks(*, subject: str, kid: str = "test-kid") -> tuple[str, dict[str, Any]]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk["kid"] = kid
    token = jwt.encode(
        {
            "iss": ISSUER,
            "aud": AUDIENCE,
            "sub": subject,
            "email": f"{subject}@example.com",
            "preferred_username": subject,
        },
        key,
        algorithm="RS256",
        headers={"kid": kid},
    )
    return token, {"keys": [jwk]}


def _client(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, *, subject: str = "reader-1"
) -> tuple[TestClient, dict[str, str]]:
    token, jwks = _oidc_token_and_jwks(subject=subject)
    monkeypatch.setenv("BRANCHLINE_OIDC_ISSUER", ISSUER)
    monkeypatch.setenv("BRANCHLINE_OIDC_AUDIENCE", AUDIENCE)
    monkeypatch.setenv("BRANCHLINE_OIDC_JWKS_JSON", json.dumps(jwks))
    monkeypatch.setenv("BRANCHLINE_CREDIT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("BRANCHLINE_RETRY_BASE_DELAY_MS", "0")

    story_dir = tmp_path / "stories"
    save_story_graph_json(
        story_dir / "lighthouse.json", StoryGraphDocument.model_validate(lighthouse_payload())
    )
    app = create_app(db_path=tmp_path / "reader.db", story_dir=story_dir)
    return TestClient(app), {"Authorization": f"Bearer {token}"}


def test_health_endpoint_returns_ok_payload(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(tmp_path, monkeypatch)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "branchline"}


def test_openapi_lists_reader_routes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(tmp_path, monkeypatch)
    paths = client.get("/openapi.json").json()["paths"]
    assert "/api/v1/stories/{story_id}/advance" in paths
    assert "/api/v1/wallet/credits" in paths
    assert "/api/v1/me/engagement" in paths
    assert "/api/v1/analytics/stories/{story_id}/performance" in paths


def test_story_catalog_is_public(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _client(tmp_path, monkeypatch)
    response = client.get("/api/v1/stories")
    assert response.status_code == 200
    assert response.json() == [
        {
            "story_id": "lighthouse",
            "title": "The Lighthouse",
            "version": 1,
            "start_page_id": "start",
            "page_count": 6,
        }
    ]


def test_reader_routes_require_a_valid_bearer_token(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client, _ = _client(tmp_path, monkeypatch)
    missing = client.get("/api/v1/stories/lighthouse/progress")
    assert missing.status_code == 401

    forged, _ = _oidc_token_and_jwks(subject="mallory")
    rejected = client.get(
        "/api/v1/wallet", headers={"Authorization": f"Bearer {forged}"}
    )
    assert rejected.status_code == 401
    assert rejected.json()["detail"] == "Invalid or expired token"


def test_navigation_flow_over_http(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, headers = _client(tmp_path, monkeypatch)

    resumed = client.get("/api/v1/stories/lighthouse/progress", headers=headers)
    assert resumed.status_code == 200
    body = resumed.json()
    assert body["page"]["page_id"] == "start"
    assert body["balance"] == 20
    assert [choice["reason"] for choice in body["choices"]] == ["free", "affordable"]
    assert body["tension"]["anticipation_level"] == 30

    moved = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "take-stairs"},
        headers=headers,
    )
    assert moved.status_code == 200
    assert moved.json()["progress"]["visited_history"] == ["stairs"]

    back = client.post("/api/v1/stories/lighthouse/back", headers=headers)
    assert back.status_code == 200
    assert back.json()["page"]["page_id"] == "start"

    at_start = client.post("/api/v1/stories/lighthouse/back", headers=headers)
    assert at_start.status_code == 409
    assert at_start.json()["detail"]["kind"] == "at_start"

    paid = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "open-vault", "idempotency_key": "tap-1"},
        headers=headers,
    )
    assert paid.status_code == 200
    paid_body = paid.json()
    assert paid_body["balance"] == 5
    assert paid_body["page"]["is_ending"] is True
    assert paid_body["progress"]["is_completed"] is True
    assert paid_body["choices"] == []

    replay = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "open-vault", "idempotency_key": "tap-1"},
        headers=headers,
    )
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    assert replay.json()["balance"] == 5

    entries = client.get("/api/v1/wallet/entries", headers=headers).json()
    assert [entry["delta"] for entry in entries] == [-15, 20]

    restarted = client.post("/api/v1/stories/lighthouse/restart", headers=headers)
    assert restarted.status_code == 200
    assert restarted.json()["progress"]["purchased_choice_ids"] == []

    insufficient = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "open-vault"},
        headers=headers,
    )
    assert insufficient.status_code == 402
    assert insufficient.json()["detail"]["kind"] == "insufficient_funds"
    assert client.get("/api/v1/wallet", headers=headers).json() == {
        "user_id": "reader-1",
        "balance": 5,
    }


def test_navigation_errors_map_to_statuses(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client, headers = _client(tmp_path, monkeypatch)
    stale = client.post(
        "/api/v1/stories/lighthouse/advance", json={"choice_id": "climb"}, headers=headers
    )
    assert stale.status_code == 409
    assert stale.json()["detail"]["kind"] == "invalid_transition"

    unknown = client.get("/api/v1/stories/harbor/progress", headers=headers)
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["kind"] == "not_found"

    client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "take-stairs", "idempotency_key": "req-1"},
        headers=headers,
    )
    conflict = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "climb", "idempotency_key": "req-1"},
        headers=headers,
    )
    assert conflict.status_code == 422
    assert conflict.json()["detail"]["kind"] == "idempotency_conflict"

    invalid = client.post(
        "/api/v1/stories/lighthouse/advance",
        json={"choice_id": "climb", "extra": True},
        headers=headers,
    )
    assert invalid.status_code == 422


def test_credit_webhook_requires_secret_and_is_idempotent(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client, headers = _client(tmp_path, monkeypatch)
    payload = {
        "user_id": "reader-1",
        "amount": 50,
        "reason": "coin_pack",
        "idempotency_key": "checkout-9",
    }

    assert client.post("/api/v1/wallet/credits", json=payload).status_code == 401
    wrong = client.post(
        "/api/v1/wallet/credits", json=payload, headers={"X-Webhook-Secret": "nope"}
    )
    assert wrong.status_code == 401

    first = client.post(
        "/api/v1/wallet/credits", json=payload, headers={"X-Webhook-Secret": WEBHOOK_SECRET}
    )
    assert first.status_code == 201
    assert first.json()["entry"]["balance_after"] == 70
    again = client.post(
        "/api/v1/wallet/credits", json=payload, headers={"X-Webhook-Secret": WEBHOOK_SECRET}
    )
    assert again.status_code == 201
    assert again.json()["entry"]["entry_id"] == first.json()["entry"]["entry_id"]

    changed = client.post(
        "/api/v1/wallet/credits",
        json={**payload, "amount": 60},
        headers={"X-Webhook-Secret": WEBHOOK_SECRET},
    )
    assert changed.status_code == 422
    assert changed.json()["detail"]["kind"] == "idempotency_conflict"

    zero = client.post(
        "/api/v1/wallet/credits",
        json={**payload, "amount": 0, "idempotency_key": "checkout-10"},
        headers={"X-Webhook-Secret": WEBHOOK_SECRET},
    )
    assert zero.status_code == 422
    assert client.get("/api/v1/wallet", headers=headers).json()["balance"] == 70


def test_credit_webhook_disabled_without_secret(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client, _ = _client(tmp_path, monkeypatch)
    monkeypatch.delenv("BRANCHLINE_CREDIT_WEBHOOK_SECRET")
    disabled = TestClient(create_app(db_path=tmp_path / "other.db", story_dir=tmp_path / "none"))
    response = disabled.post(
        "/api/v1/wallet/credits",
        json={"user_id": "u", "amount": 1, "reason": "r", "idempotency_key": "k"},
        headers={"X-Webhook-Secret": "anything"},
    )
    assert response.status_code == 503


def test_engagement_endpoint_reflects_new_activity(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client, headers = _client(tmp_path, monkeypatch)
    empty = client.get("/api/v1/me/engagement", headers=headers).json()
    assert empty["choices_made"] == 0
    assert empty["churn_risk"] == "high"

    client.post(
        "/api/v1/stories/lighthouse/advance", json={"choice_id": "open-vault"}, headers=headers
    )
    snapshot = client.get("/api/v1/me/engagement", headers=headers).json()
    assert snapshot["user_id"] == "reader-1"
    assert snapshot["stories_read"] == 1
    assert snapshot["choices_made"] == 1
    assert snapshot["premium_purchases"] == 1
    assert snapshot["engagement_score"] == pytest.approx(62.0, abs=0.5)


def test_restart_policy_comes_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BRANCHLINE_RESTART_KEEPS_UNLOCKS", "true")
    client, headers = _client(tmp_path, monkeypatch)
    client.post(
        "/api/v1/stories/lighthouse/advance", json={"choice_id": "open-vault"}, headers=headers
    )
    restarted = client.post("/api/v1/stories/lighthouse/restart", headers=headers).json()
    assert restarted["progress"]["purchased_choice_ids"] == ["open-vault"]
    assert restarted["choices"][1]["reason"] == "previously_purchased"


def test_story_analytics_require_an_admin_subject(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BRANCHLINE_ANALYTICS_ADMINS", "editor-1, editor-2")
    client, headers = _client(tmp_path, monkeypatch)
    assert client.get("/api/v1/analytics/stories/lighthouse/performance").status_code == 401

    forbidden = client.get("/api/v1/analytics/stories/lighthouse/performance", headers=headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "Analytics admin access required"
    premium = client.get("/api/v1/analytics/stories/lighthouse/premium-choices", headers=headers)
    assert premium.status_code == 403


def test_story_analytics_reflect_committed_reading(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BRANCHLINE_ANALYTICS_ADMINS", "reader-1")
    client, headers = _client(tmp_path, monkeypatch)
    client.post(
        "/api/v1/stories/lighthouse/advance", json={"choice_id": "open-vault"}, headers=headers
    )

    performance = client.get(
        "/api/v1/analytics/stories/lighthouse/performance", headers=headers
    )
    assert performance.status_code == 200
    body = performance.json()
    assert body["window_days"] == 30
    assert body["total_readers"] == 1
    assert body["completion_rate"] == 1.0
    assert body["premium_conversion_rate"] == 1.0
    assert body["popular_choices"] == [
        {
            "choice_id": "open-vault",
            "text": "Open the vault",
            "selections": 1,
            "unique_readers": 1,
        }
    ]

    premium = client.get(
        "/api/v1/analytics/stories/lighthouse/premium-choices?days=7", headers=headers
    )
    assert premium.status_code == 200
    rows = {row["choice_id"]: row for row in premium.json()}
    assert list(rows) == ["open-vault", "bribe-keeper"]
    assert rows["open-vault"]["revenue"] == 15
    assert rows["open-vault"]["conversion_rate"] == 1.0
    assert rows["bribe-keeper"]["readers_reached"] == 0

    unknown = client.get("/api/v1/analytics/stories/harbor/performance", headers=headers)
    assert unknown.status_code == 404
    out_of_range = client.get(
        "/api/v1/analytics/stories/lighthouse/performance?days=0", headers=headers
    )
    assert out_of_range.status_code == 422
