"""OpenID Connect bearer-token validation for reader identity."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from branchline.core.ttl_cache import TtlCache
from branchline.settings import OidcSettings


@dataclass(frozen=True)
class OidcClaims:
    """Verified OIDC claims used by API auth."""

    subject: str
    issuer: str
    email: str | None
    preferred_username: str | None
    audience: str | None


def _optional_claim(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    return value if isinstance(value, str) and value.strip() else None


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise RuntimeError("OIDC JWKS payload missing keys list.")
    if kid is None:
        if len(keys) == 1 and isinstance(keys[0], dict):
            return keys[0]
        raise RuntimeError("OIDC token header missing kid and JWKS has multiple keys.")
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    raise RuntimeError("OIDC JWKS did not contain signing key for token kid.")


class OidcTokenValidator:
    """Verifies bearer tokens; discovery and JWKS documents are TTL cached.

    ``client_factory`` builds the ``httpx.Client`` used for fetches so tests can
    hand in a client bound to ``httpx.MockTransport``.
    """

    def __init__(
        self,
        settings: OidcSettings,
        *,
        client_factory: Callable[[], httpx.Client] | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=10.0, follow_redirects=True)
        )
        self._well_known: TtlCache[str, dict[str, Any]] = TtlCache(
            ttl_seconds=settings.well_known_ttl_seconds
        )
        self._jwks: TtlCache[str, dict[str, Any]] = TtlCache(
            ttl_seconds=settings.jwks_ttl_seconds
        )

    @property
    def configured(self) -> bool:
        return bool(self._settings.issuer)

    def invalidate(self) -> None:
        """Forget cached discovery and key documents, e.g. after key rotation."""
        self._well_known.invalidate()
        self._jwks.invalidate()

    def validate(self, token: str) -> OidcClaims:
        issuer = self._settings.issuer
        if not issuer:
            raise RuntimeError("BRANCHLINE_OIDC_ISSUER is required for bearer auth.")
        audience = self._settings.audience

        header = jwt.get_unverified_header(token)
        kid = header.get("kid") if isinstance(header, dict) else None
        jwk = _select_jwk(self._fetch_jwks(issuer), kid)
        public_key = cast(RSAPublicKey, jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk)))
        options: dict[str, bool] = {"verify_aud": bool(audience)}
        payload = jwt.decode(
            token,
            key=public_key,
            algorithms=list(self._settings.algorithms),
            audience=audience or None,
            issuer=issuer,
            options=cast(Any, options),
        )
        if not isinstance(payload, dict):
            raise RuntimeError("OIDC token payload was not an object.")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise RuntimeError("OIDC token missing subject.")
        return OidcClaims(
            subject=subject,
            issuer=issuer,
            email=_optional_claim(payload, "email"),
            preferred_username=_optional_claim(payload, "preferred_username"),
            audience=audience or None,
        )

    def _get_json(self, url: str, *, label: str) -> dict[str, Any]:
        with self._client_factory() as client:
            response = client.get(url)
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError(f"OIDC {label} response was not an object.")
        return payload

    def _fetch_well_known(self, issuer: str) -> dict[str, Any]:
        url = issuer.rstrip("/") + "/.well-known/openid-configuration"
        return self._well_known.get_or_load(
            issuer, lambda: self._get_json(url, label="well-known")
        )

    def _resolve_jwks_url(self, issuer: str) -> str:
        if self._settings.jwks_url:
            return self._settings.jwks_url
        jwks_uri = self._fetch_well_known(issuer).get("jwks_uri")
        if isinstance(jwks_uri, str) and jwks_uri:
            return jwks_uri
        raise RuntimeError("OIDC well-known config missing jwks_uri.")

    def _fetch_jwks(self, issuer: str) -> dict[str, Any]:
        if self._settings.jwks_json:
            payload = json.loads(self._settings.jwks_json)
            if not isinstance(payload, dict):
                raise RuntimeError("OIDC JWKS JSON must be an object.")
            return payload
        return self._jwks.get_or_load(
            issuer, lambda: self._get_json(self._resolve_jwks_url(issuer), label="JWKS")
        )
