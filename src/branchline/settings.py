"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = Path("work/local/branchline.db")
DEFAULT_STORY_DIR = Path("work/stories")


def env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def bool_env(name: str, default: bool = False) -> bool:
    raw = env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OidcSettings:
    issuer: str
    audience: str
    algorithms: tuple[str, ...]
    jwks_url: str
    jwks_json: str
    jwks_ttl_seconds: int
    well_known_ttl_seconds: int


@dataclass(frozen=True)
class ReaderSettings:
    """Everything the runtime reads from ``BRANCHLINE_*`` variables."""

    db_path: Path
    story_dir: Path
    starting_balance: int
    retry_attempts: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int
    restart_keeps_unlocks: bool
    engagement_cache_ttl_seconds: int
    session_idle_gap_seconds: int
    analytics_buffer_size: int
    credit_webhook_secret: str
    analytics_admins: tuple[str, ...]
    cors_origins: tuple[str, ...]
    oidc: OidcSettings


def _csv_env(name: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in env(name).split(",") if item.strip())


def _cors_origins() -> tuple[str, ...]:
    origins = _csv_env("BRANCHLINE_CORS_ORIGINS")
    if origins:
        return origins
    return ("http://127.0.0.1:5173", "http://localhost:5173")


def load_oidc_settings() -> OidcSettings:
    algorithms = tuple(
        algo.strip() for algo in env("BRANCHLINE_OIDC_ALGORITHMS", "RS256").split(",") if algo.strip()
    )
    return OidcSettings(
        issuer=env("BRANCHLINE_OIDC_ISSUER"),
        audience=env("BRANCHLINE_OIDC_AUDIENCE"),
        algorithms=algorithms or ("RS256",),
        jwks_url=env("BRANCHLINE_OIDC_JWKS_URL"),
        jwks_json=env("BRANCHLINE_OIDC_JWKS_JSON"),
        jwks_ttl_seconds=int_env(
            "BRANCHLINE_OIDC_JWKS_TTL_SECONDS", 300, minimum=30, maximum=3600
        ),
        well_known_ttl_seconds=int_env(
            "BRANCHLINE_OIDC_WELL_KNOWN_TTL_SECONDS", 300, minimum=30, maximum=3600
        ),
    )


def load_settings() -> ReaderSettings:
    """Read settings once; out-of-range integers are clamped, junk falls back to defaults."""
    return ReaderSettings(
        db_path=Path(env("BRANCHLINE_DB_PATH") or DEFAULT_DB_PATH),
        story_dir=Path(env("BRANCHLINE_STORY_DIR") or DEFAULT_STORY_DIR),
        starting_balance=int_env(
            "BRANCHLINE_STARTING_BALANCE", 20, minimum=0, maximum=1_000_000
        ),
        retry_attempts=int_env("BRANCHLINE_RETRY_ATTEMPTS", 4, minimum=1, maximum=20),
        retry_base_delay_ms=int_env(
            "BRANCHLINE_RETRY_BASE_DELAY_MS", 25, minimum=0, maximum=5_000
        ),
        retry_max_delay_ms=int_env(
            "BRANCHLINE_RETRY_MAX_DELAY_MS", 400, minimum=0, maximum=60_000
        ),
        restart_keeps_unlocks=bool_env("BRANCHLINE_RESTART_KEEPS_UNLOCKS"),
        engagement_cache_ttl_seconds=int_env(
            "BRANCHLINE_ENGAGEMENT_CACHE_TTL_SECONDS", 60, minimum=1, maximum=86_400
        ),
        session_idle_gap_seconds=int_env(
            "BRANCHLINE_SESSION_IDLE_GAP_SECONDS", 1800, minimum=60, maximum=86_400
        ),
        analytics_buffer_size=int_env(
            "BRANCHLINE_ANALYTICS_BUFFER_SIZE", 1000, minimum=1, maximum=1_000_000
        ),
        credit_webhook_secret=env("BRANCHLINE_CREDIT_WEBHOOK_SECRET"),
        analytics_admins=_csv_env("BRANCHLINE_ANALYTICS_ADMINS"),
        cors_origins=_cors_origins(),
        oidc=load_oidc_settings(),
    )
