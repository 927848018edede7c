from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from campaign_store import CampaignStore


class CampaignStorePG(CampaignStore):
    """Postgres-backed campaign store.

    This replaces the local SQLite file (STORE_DB_PATH) for Railway/Supabase.
    Queries are shared with CampaignStore; placeholders are rewritten to %s,
    JSON columns are jsonb and timestamps are timestamptz.
    """

    ddl = (
        """
        CREATE TABLE IF NOT EXISTS api_campaigns (
          id TEXT PRIMARY KEY,
          api_key_id TEXT NOT NULL,
          user_id TEXT,
          status TEXT NOT NULL DEFAULT 'draft',
          url TEXT,
          business_name TEXT,
          business_type TEXT,
          strategy JSONB,
          targeting JSONB,
          variants JSONB,
          objective TEXT DEFAULT 'leads',
          daily_budget_cents INTEGER DEFAULT 2000,
          meta_access_token TEXT,
          meta_pixel_id TEXT,
          meta_campaign_id TEXT,
          meta_adset_id TEXT,
          meta_ad_id TEXT,
          meta_leadform_id TEXT,
          launched_at TIMESTAMPTZ,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS businesses (
          id TEXT PRIMARY KEY,
          user_id TEXT,
          name TEXT,
          facebook_page_id TEXT,
          facebook_ad_account_id TEXT,
          facebook_access_token TEXT,
          facebook_pixel_id TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS campaigns (
          id TEXT PRIMARY KEY,
          business_id TEXT,
          api_key_id TEXT,
          name TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'draft',
          daily_budget_cents INTEGER NOT NULL DEFAULT 1500,
          radius_km INTEGER NOT NULL DEFAULT 25,
          ad_copy TEXT,
          ad_headline TEXT,
          ad_image_url TEXT,
          meta_campaign_id TEXT,
          meta_adset_id TEXT,
          meta_ad_id TEXT,
          meta_leadform_id TEXT,
          leads_count INTEGER NOT NULL DEFAULT 0,
          spend_cents INTEGER NOT NULL DEFAULT 0,
          impressions INTEGER NOT NULL DEFAULT 0,
          clicks INTEGER NOT NULL DEFAULT 0,
          cpl_cents INTEGER,
          performance_status TEXT NOT NULL DEFAULT 'learning',
          last_synced_at TIMESTAMPTZ,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          launched_at TIMESTAMPTZ
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS leads (
          id TEXT PRIMARY KEY,
          campaign_id TEXT,
          business_id TEXT,
          name TEXT,
          phone TEXT,
          email TEXT,
          status TEXT NOT NULL DEFAULT 'new',
          meta_lead_id TEXT,
          quality TEXT,
          quality_reported_at TIMESTAMPTZ,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS api_keys (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          key_prefix TEXT NOT NULL,
          key_hash TEXT NOT NULL UNIQUE,
          name TEXT NOT NULL DEFAULT 'Default',
          tier TEXT NOT NULL DEFAULT 'free',
          is_live BOOLEAN NOT NULL DEFAULT TRUE,
          rate_limit_per_min INTEGER NOT NULL DEFAULT 10,
          rate_limit_per_day INTEGER NOT NULL DEFAULT 100,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          last_used_at TIMESTAMPTZ,
          revoked_at TIMESTAMPTZ
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS api_usage (
          id TEXT PRIMARY KEY,
          api_key_id TEXT NOT NULL,
          endpoint TEXT NOT NULL,
          method TEXT NOT NULL,
          status_code INTEGER NOT NULL DEFAULT 0,
          response_time_ms INTEGER,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS launch_leases (
          lease_key TEXT PRIMARY KEY,
          acquired_at TIMESTAMPTZ NOT NULL,
          expires_at TIMESTAMPTZ NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_api_campaigns_api_key ON api_campaigns(api_key_id)",
        "CREATE INDEX IF NOT EXISTS idx_campaigns_meta ON campaigns(meta_campaign_id)",
        "CREATE INDEX IF NOT EXISTS idx_api_usage_key_time ON api_usage(api_key_id, created_at)",
    )

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._init_db()

    @contextmanager
    def _conn(self) -> Iterator[Any]:
        with psycopg.connect(self.database_url, row_factory=dict_row) as conn:
            yield conn

    def _sql(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def _json(self, value: Any) -> Any:
        return Jsonb(value)

    def _ts(self, dt: Optional[datetime]) -> Any:
        return dt
