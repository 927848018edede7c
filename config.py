"""config.py

Service configuration loaded from environment variables (optionally via .env).

Environment variables
---------------------
Meta Graph API:
- META_API_VERSION (default: v21.0)
- META_GRAPH_URL (default: https://graph.facebook.com)
- META_TIMEOUT_S (default: 30)
- META_APP_SECRET (optional; enables appsecret_proof)
- META_SYSTEM_USER_TOKEN (optional system-wide fallback token)
- META_TOKEN_SOURCE ("db" to read the fallback token from graph_api_tokens)
- META_PIXEL_ID (optional fallback pixel for the Conversion API)

Storage:
- STORE_SOURCE ("db" to use Postgres; requires DATABASE_URL)
- STORE_DB_PATH (default: .lead_launcher.db; ignored if STORE_SOURCE=db)
- DATABASE_URL

Launch defaults:
- DEFAULT_DAILY_BUDGET_CENTS (default: 2000)
- DEFAULT_RADIUS_KM (default: 25)
- DEFAULT_COUNTRY (default: US)
- AD_LINK_URL, PRIVACY_POLICY_URL
- LAUNCH_LEASE_TTL_S (default: 120)
- CLEANUP_LEAD_FORMS (default: false)

Misc:
- SERVICE_LOG_LEVEL (default: INFO)
- WORKER_POLL_SECONDS (default: 900)
- WORKER_BATCH_LIMIT (default: 50)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_str_env(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _get_int_env(*names: str, default: int) -> int:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            try:
                return int(v)
            except ValueError:
                pass
    return int(default)


def _get_bool_env(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    api_version: str = "v21.0"
    graph_url: str = "https://graph.facebook.com"
    timeout_s: int = 30
    app_secret: Optional[str] = None

    system_user_token: Optional[str] = None
    token_source: str = ""
    pixel_id: Optional[str] = None

    store_source: str = ""
    store_db_path: str = ".lead_launcher.db"
    database_url: Optional[str] = None

    default_daily_budget_cents: int = 2000
    default_radius_km: int = 25
    default_country: str = "US"
    ad_link_url: str = "https://example.com/"
    privacy_policy_url: str = "https://example.com/privacy"
    launch_lease_ttl_s: int = 120
    cleanup_lead_forms: bool = False

    log_level: str = "INFO"
    worker_poll_s: int = 900
    worker_batch_limit: int = 50

    @property
    def graph_base_url(self) -> str:
        return f"{self.graph_url.rstrip('/')}/{self.api_version}"

    @property
    def use_postgres(self) -> bool:
        return self.store_source == "db"

    @staticmethod
    def from_env() -> "Settings":
        """Loads settings from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        store_source = _get_str_env("STORE_SOURCE").lower()
        database_url = _get_str_env("DATABASE_URL") or None
        if store_source == "db" and not database_url:
            raise ValueError("STORE_SOURCE=db but DATABASE_URL is not set.")

        token_source = _get_str_env("META_TOKEN_SOURCE").lower()
        if token_source == "db" and not database_url:
            raise ValueError("META_TOKEN_SOURCE=db but DATABASE_URL is not set.")

        return Settings(
            api_version=_get_str_env("META_API_VERSION", "v21.0"),
            graph_url=_get_str_env("META_GRAPH_URL", "https://graph.facebook.com"),
            timeout_s=_get_int_env("META_TIMEOUT_S", default=30),
            app_secret=_get_str_env("META_APP_SECRET") or None,
            system_user_token=_get_str_env("META_SYSTEM_USER_TOKEN") or None,
            token_source=token_source,
            pixel_id=_get_str_env("META_PIXEL_ID") or None,
            store_source=store_source,
            store_db_path=_get_str_env("STORE_DB_PATH", ".lead_launcher.db"),
            database_url=database_url,
            default_daily_budget_cents=_get_int_env("DEFAULT_DAILY_BUDGET_CENTS", default=2000),
            default_radius_km=_get_int_env("DEFAULT_RADIUS_KM", default=25),
            default_country=_get_str_env("DEFAULT_COUNTRY", "US").upper(),
            ad_link_url=_get_str_env("AD_LINK_URL", "https://example.com/"),
            privacy_policy_url=_get_str_env("PRIVACY_POLICY_URL", "https://example.com/privacy"),
            launch_lease_ttl_s=_get_int_env("LAUNCH_LEASE_TTL_S", default=120),
            cleanup_lead_forms=_get_bool_env("CLEANUP_LEAD_FORMS"),
            log_level=_get_str_env("SERVICE_LOG_LEVEL", "INFO").upper(),
            worker_poll_s=_get_int_env("WORKER_POLL_SECONDS", "WORKER_POLL_S", default=900),
            worker_batch_limit=_get_int_env("WORKER_BATCH_LIMIT", default=50),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
