from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    unsubscribe_secret: str
    unsubscribe_token_ttl_days: int
    public_base_url: str
    email_transport: str
    resend_api_key: str
    email_from: str
    email_timeout_seconds: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/ats_notify.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    jwt_secret = os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip()
    email_transport = os.getenv("EMAIL_TRANSPORT", "memory").strip().lower()
    if email_transport not in {"memory", "resend"}:
        email_transport = "memory"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        unsubscribe_secret=os.getenv("UNSUBSCRIBE_SECRET", "").strip() or jwt_secret,
        unsubscribe_token_ttl_days=max(1, min(365, _int_env("UNSUBSCRIBE_TOKEN_TTL_DAYS", 90))),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").strip().rstrip("/"),
        email_transport=email_transport,
        resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
        email_from=os.getenv("EMAIL_FROM", "onboarding@resend.dev").strip(),
        email_timeout_seconds=max(1, min(60, _int_env("EMAIL_TIMEOUT_SECONDS", 8))),
    )
