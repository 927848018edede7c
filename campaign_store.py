"""campaign_store.py

System of record for drafts, launched campaigns, leads, businesses and API keys.

SQLite by default; Postgres (Railway/Supabase) when enabled by setting:
  STORE_SOURCE=db
  DATABASE_URL=...

Tables (created automatically):
  - api_campaigns   drafts created through the API (owner = api_key_id)
  - campaigns       live/reporting mirror, plus legacy campaigns owned via businesses
  - businesses      business profiles with stored Meta credentials
  - leads           lead-form submissions
  - api_keys        hashed API keys
  - api_usage       one row per authenticated request
  - launch_leases   per-draft launch lease (prevents concurrent launches)

Notes
-----
- Launched campaigns are resolved through a single find-first chain:
  api_campaigns (by internal id + owner) first, then campaigns (by Meta campaign
  id or row id, owned by the caller's key or the caller's business).
- Status writes go only to the table that resolved the record.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from config import Settings
from models import (
    SOURCE_DRAFTS,
    SOURCE_LIVE,
    TIER_LIMITS,
    ApiKeyRecord,
    Business,
    CampaignDraft,
    Lead,
    LiveCampaign,
    ResolvedCampaign,
    can_transition,
    parse_timestamp,
    utcnow,
)


class InvalidTransition(ValueError):
    pass


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


_SQLITE_DDL = (
    """
    CREATE TABLE IF NOT EXISTS api_campaigns (
        id TEXT PRIMARY KEY,
        api_key_id TEXT NOT NULL,
        user_id TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        url TEXT,
        business_name TEXT,
        business_type TEXT,
        strategy TEXT,
        targeting TEXT,
        variants TEXT,
        objective TEXT DEFAULT 'leads',
        daily_budget_cents INTEGER DEFAULT 2000,
        meta_access_token TEXT,
        meta_pixel_id TEXT,
        meta_campaign_id TEXT,
        meta_adset_id TEXT,
        meta_ad_id TEXT,
        meta_leadform_id TEXT,
        launched_at TEXT,
        created_at TEXT NOT NULL
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
        created_at TEXT NOT NULL
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
        last_synced_at TEXT,
        created_at TEXT NOT NULL,
        launched_at TEXT
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
        quality_reported_at TEXT,
        created_at TEXT NOT NULL
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
        is_live INTEGER NOT NULL DEFAULT 1,
        rate_limit_per_min INTEGER NOT NULL DEFAULT 10,
        rate_limit_per_day INTEGER NOT NULL DEFAULT 100,
        created_at TEXT NOT NULL,
        last_used_at TEXT,
        revoked_at TEXT
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
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS launch_leases (
        lease_key TEXT PRIMARY KEY,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_api_campaigns_api_key ON api_campaigns(api_key_id)",
    "CREATE INDEX IF NOT EXISTS idx_campaigns_meta ON campaigns(meta_campaign_id)",
    "CREATE INDEX IF NOT EXISTS idx_api_usage_key_time ON api_usage(api_key_id, created_at)",
)

_LIVE_SELECT = """
    SELECT c.id, c.business_id, c.api_key_id, c.meta_campaign_id, c.status,
           c.launched_at, c.created_at,
           b.user_id AS business_user_id,
           b.facebook_access_token AS business_access_token,
           b.facebook_pixel_id AS business_pixel_id,
           d.meta_access_token AS draft_access_token,
           d.meta_pixel_id AS draft_pixel_id
    FROM campaigns c
    LEFT JOIN businesses b ON b.id = c.business_id
    LEFT JOIN api_campaigns d ON d.meta_campaign_id = c.meta_campaign_id
"""


class CampaignStore:
    """SQLite-backed campaign store.

    The query layer is shared with CampaignStorePG; subclasses only change the
    connection, the placeholder style and how JSON/timestamp params are bound.
    """

    ddl: Tuple[str, ...] = _SQLITE_DDL

    def __init__(self, db_path: str = ".lead_launcher.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # -----------------------------
    # Backend hooks
    # -----------------------------

    @contextmanager
    def _conn(self) -> Iterator[Any]:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _sql(self, sql: str) -> str:
        return sql

    def _json(self, value: Any) -> Any:
        return json.dumps(value, ensure_ascii=False)

    def _ts(self, dt: Optional[datetime]) -> Any:
        if dt is None:
            return None
        return dt.isoformat(timespec="microseconds")

    def _init_db(self) -> None:
        with self._conn() as conn:
            for stmt in self.ddl:
                conn.execute(stmt)

    # -----------------------------
    # Query helpers
    # -----------------------------

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.execute(self._sql(sql), params)
            return [dict(r) for r in cur.fetchall() or []]

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._conn() as conn:
            cur = conn.execute(self._sql(sql), params)
            return int(cur.rowcount or 0)

    # -----------------------------
    # Drafts
    # -----------------------------

    def create_draft(
        self,
        *,
        owner_key_id: str,
        user_id: Optional[str] = None,
        business_name: Optional[str] = None,
        business_type: Optional[str] = None,
        url: Optional[str] = None,
        strategy: Optional[dict] = None,
        targeting: Optional[dict] = None,
        variants: Optional[List[dict]] = None,
        daily_budget_cents: Optional[int] = None,
        objective: str = "leads",
        meta_access_token: Optional[str] = None,
        meta_pixel_id: Optional[str] = None,
        draft_id: Optional[str] = None,
    ) -> CampaignDraft:
        draft_id = draft_id or f"camp_{secrets.token_hex(8)}"
        self._execute(
            """
            INSERT INTO api_campaigns
            (id, api_key_id, user_id, status, url, business_name, business_type, strategy, targeting,
             variants, objective, daily_budget_cents, meta_access_token, meta_pixel_id, created_at)
            VALUES (?, ?, ?, 'draft', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                draft_id,
                owner_key_id,
                user_id,
                url,
                business_name,
                business_type,
                self._json(strategy or {}),
                self._json(targeting or {}),
                self._json(variants or []),
                objective,
                daily_budget_cents if daily_budget_cents is not None else 2000,
                meta_access_token,
                meta_pixel_id,
                self._ts(utcnow()),
            ),
        )
        draft = self.get_draft(draft_id, owner_key_id)
        if draft is None:
            raise RuntimeError(f"Draft {draft_id} was not readable after insert.")
        return draft

    def get_draft(self, draft_id: str, owner_key_id: str) -> Optional[CampaignDraft]:
        """Owner-scoped: a draft is never visible to another key."""
        row = self._fetchone(
            "SELECT * FROM api_campaigns WHERE id=? AND api_key_id=?",
            (draft_id, owner_key_id),
        )
        return CampaignDraft.from_row(row) if row else None

    def mark_draft_launched(
        self,
        draft_id: str,
        owner_key_id: str,
        *,
        meta_campaign_id: str,
        meta_adset_id: str,
        meta_ad_id: str,
        meta_leadform_id: str,
        launched_at: datetime,
    ) -> bool:
        # All four ids are written in one statement.
        n = self._execute(
            """
            UPDATE api_campaigns
            SET status='active', meta_campaign_id=?, meta_adset_id=?, meta_ad_id=?,
                meta_leadform_id=?, launched_at=?
            WHERE id=? AND api_key_id=? AND status <> 'ended'
            """,
            (
                meta_campaign_id,
                meta_adset_id,
                meta_ad_id,
                meta_leadform_id,
                self._ts(launched_at),
                draft_id,
                owner_key_id,
            ),
        )
        return n > 0

    # -----------------------------
    # Live campaigns
    # -----------------------------

    def insert_live_campaign(self, live: LiveCampaign) -> str:
        row_id = live.id or str(uuid.uuid4())
        now = utcnow()
        self._execute(
            """
            INSERT INTO campaigns
            (id, business_id, api_key_id, name, status, daily_budget_cents, radius_km, ad_copy, ad_headline,
             ad_image_url, meta_campaign_id, meta_adset_id, meta_ad_id, meta_leadform_id, leads_count,
             spend_cents, impressions, clicks, cpl_cents, performance_status, created_at, launched_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id,
                live.business_id,
                live.api_key_id,
                live.name,
                live.status,
                int(live.daily_budget_cents),
                int(live.radius_km),
                live.ad_copy,
                live.ad_headline,
                live.ad_image_url,
                live.meta_campaign_id,
                live.meta_adset_id,
                live.meta_ad_id,
                live.meta_leadform_id,
                int(live.leads_count),
                int(live.spend_cents),
                int(live.impressions),
                int(live.clicks),
                live.cpl_cents,
                live.performance_status,
                self._ts(now),
                self._ts(live.launched_at or now),
            ),
        )
        return row_id

    def find_live_campaign(self, meta_campaign_id: str) -> Optional[ResolvedCampaign]:
        """Unscoped lookup by Meta campaign id (operator tooling only)."""
        row = self._fetchone(
            _LIVE_SELECT + " WHERE c.meta_campaign_id=? ORDER BY c.created_at DESC",
            (meta_campaign_id,),
        )
        return self._resolved_from_live_row(row) if row else None

    def save_performance_snapshot(self, meta_campaign_id: str, snapshot: Dict[str, Any]) -> int:
        """Overwrite metrics fields only."""
        return self._execute(
            """
            UPDATE campaigns
            SET impressions=?, clicks=?, spend_cents=?, leads_count=?, cpl_cents=?,
                performance_status=?, last_synced_at=?
            WHERE meta_campaign_id=?
            """,
            (
                int(snapshot["impressions"]),
                int(snapshot["clicks"]),
                int(snapshot["spend_cents"]),
                int(snapshot["leads_count"]),
                snapshot.get("cpl_cents"),
                snapshot["performance_status"],
                self._ts(parse_timestamp(snapshot.get("last_synced_at")) or utcnow()),
                meta_campaign_id,
            ),
        )

    # -----------------------------
    # Resolution chain
    # -----------------------------

    def _resolve_from_drafts(self, campaign_id: str, owner: ApiKeyRecord) -> Optional[ResolvedCampaign]:
        draft = self.get_draft(campaign_id, owner.id)
        if not draft or not draft.meta_campaign_id:
            return None
        return ResolvedCampaign(
            source=SOURCE_DRAFTS,
            record_id=draft.id,
            meta_campaign_id=draft.meta_campaign_id,
            status=draft.status,
            launched_at=draft.launched_at,
            created_at=draft.created_at,
            stored_access_token=draft.stored_access_token,
            stored_pixel_id=draft.stored_pixel_id,
            business_id=None,
        )

    def _resolve_from_live(self, campaign_id: str, owner: ApiKeyRecord) -> Optional[ResolvedCampaign]:
        rows = self._fetchall(
            _LIVE_SELECT
            + " WHERE (c.meta_campaign_id=? OR c.id=?) AND c.meta_campaign_id IS NOT NULL ORDER BY c.created_at DESC",
            (campaign_id, campaign_id),
        )
        for row in rows:
            owned = (row.get("api_key_id") and str(row["api_key_id"]) == owner.id) or (
                row.get("business_user_id") and str(row["business_user_id"]) == owner.user_id
            )
            if owned:
                return self._resolved_from_live_row(row)
        return None

    def _resolved_from_live_row(self, row: Dict[str, Any]) -> ResolvedCampaign:
        return ResolvedCampaign(
            source=SOURCE_LIVE,
            record_id=str(row["id"]),
            meta_campaign_id=str(row["meta_campaign_id"]),
            status=row.get("status") or "unknown",
            launched_at=parse_timestamp(row.get("launched_at")),
            created_at=parse_timestamp(row.get("created_at")),
            stored_access_token=row.get("draft_access_token") or row.get("business_access_token") or None,
            stored_pixel_id=row.get("draft_pixel_id") or row.get("business_pixel_id") or None,
            business_id=str(row["business_id"]) if row.get("business_id") else None,
        )

    def resolution_chain(self) -> List[Callable[[str, ApiKeyRecord], Optional[ResolvedCampaign]]]:
        return [self._resolve_from_drafts, self._resolve_from_live]

    def resolve_campaign(self, campaign_id: str, owner: ApiKeyRecord) -> Optional[ResolvedCampaign]:
        for resolver in self.resolution_chain():
            found = resolver(campaign_id, owner)
            if found:
                return found
        return None

    def update_campaign_status(self, source: str, record_id: str, status: str) -> bool:
        """Write a status to the table that resolved the record, enforcing forward-only moves."""
        table = {SOURCE_DRAFTS: "api_campaigns", SOURCE_LIVE: "campaigns"}.get(source)
        if not table:
            raise ValueError(f"Unknown campaign source: {source!r}")

        row = self._fetchone(f"SELECT status FROM {table} WHERE id=?", (record_id,))
        if not row:
            return False
        current = row.get("status")
        if not can_transition(current, status):
            raise InvalidTransition(f"Cannot move campaign from {current!r} to {status!r}")
        return self._execute(f"UPDATE {table} SET status=? WHERE id=?", (status, record_id)) > 0

    def list_syncable_campaigns(self, limit: int = 50) -> List[ResolvedCampaign]:
        rows = self._fetchall(
            _LIVE_SELECT
            + """
            WHERE c.status='active' AND c.meta_campaign_id IS NOT NULL
            ORDER BY COALESCE(c.last_synced_at, c.created_at) ASC
            LIMIT ?
            """,
            (int(limit),),
        )
        return [self._resolved_from_live_row(r) for r in rows]

    # -----------------------------
    # Businesses & leads
    # -----------------------------

    def upsert_business(self, business: Business) -> None:
        self._execute(
            """
            INSERT INTO businesses
            (id, user_id, name, facebook_page_id, facebook_ad_account_id, facebook_access_token,
             facebook_pixel_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                user_id=excluded.user_id, name=excluded.name,
                facebook_page_id=excluded.facebook_page_id,
                facebook_ad_account_id=excluded.facebook_ad_account_id,
                facebook_access_token=excluded.facebook_access_token,
                facebook_pixel_id=excluded.facebook_pixel_id
            """,
            (
                business.id,
                business.user_id,
                business.name,
                business.facebook_page_id,
                business.facebook_ad_account_id,
                business.facebook_access_token,
                business.facebook_pixel_id,
                self._ts(utcnow()),
            ),
        )

    def get_business(self, business_id: str) -> Optional[Business]:
        row = self._fetchone("SELECT * FROM businesses WHERE id=?", (business_id,))
        if not row:
            return None
        return Business(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            name=row.get("name"),
            facebook_access_token=row.get("facebook_access_token") or None,
            facebook_page_id=row.get("facebook_page_id") or None,
            facebook_ad_account_id=row.get("facebook_ad_account_id") or None,
            facebook_pixel_id=row.get("facebook_pixel_id") or None,
        )

    def insert_lead(self, lead: Lead) -> None:
        self._execute(
            """
            INSERT INTO leads (id, campaign_id, business_id, name, phone, email, status, meta_lead_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lead.id,
                lead.campaign_id,
                lead.business_id,
                lead.name,
                lead.phone,
                lead.email,
                lead.status,
                lead.meta_lead_id,
                self._ts(utcnow()),
            ),
        )

    def get_lead(self, lead_id: str) -> Optional[Lead]:
        row = self._fetchone("SELECT * FROM leads WHERE id=?", (lead_id,))
        if not row:
            return None
        return Lead(
            id=str(row["id"]),
            campaign_id=str(row["campaign_id"]) if row.get("campaign_id") else None,
            business_id=str(row["business_id"]) if row.get("business_id") else None,
            name=row.get("name"),
            phone=row.get("phone"),
            email=row.get("email"),
            meta_lead_id=row.get("meta_lead_id") or None,
            status=row.get("status") or "new",
        )

    def record_lead_quality(self, lead_id: str, quality: str) -> bool:
        n = self._execute(
            "UPDATE leads SET quality=?, quality_reported_at=? WHERE id=?",
            (quality, self._ts(utcnow()), lead_id),
        )
        return n > 0

    # -----------------------------
    # Launch lease
    # -----------------------------

    def acquire_launch_lease(self, lease_key: str, ttl_s: int) -> bool:
        """Conditional insert; an expired lease is taken over."""
        now = utcnow()
        with self._conn() as conn:
            conn.execute(
                self._sql("DELETE FROM launch_leases WHERE lease_key=? AND expires_at <= ?"),
                (lease_key, self._ts(now)),
            )
            cur = conn.execute(
                self._sql(
                    """
                    INSERT INTO launch_leases (lease_key, acquired_at, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (lease_key) DO NOTHING
                    """
                ),
                (lease_key, self._ts(now), self._ts(now + timedelta(seconds=int(ttl_s)))),
            )
            return int(cur.rowcount or 0) == 1

    def release_launch_lease(self, lease_key: str) -> None:
        self._execute("DELETE FROM launch_leases WHERE lease_key=?", (lease_key,))

    # -----------------------------
    # API keys & usage
    # -----------------------------

    def create_api_key(
        self,
        *,
        user_id: str,
        name: str = "Default",
        tier: str = "free",
        is_live: bool = True,
    ) -> Tuple[str, ApiKeyRecord]:
        """Returns (plaintext_key, record). Only the SHA-256 hash is stored."""
        limits = TIER_LIMITS.get(tier) or TIER_LIMITS["free"]
        raw_key = f"ll_{'live' if is_live else 'test'}_{secrets.token_hex(24)}"
        key_id = str(uuid.uuid4())
        self._execute(
            """
            INSERT INTO api_keys
            (id, user_id, key_prefix, key_hash, name, tier, is_live, rate_limit_per_min, rate_limit_per_day, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key_id,
                user_id,
                raw_key[:16],
                hash_api_key(raw_key),
                name,
                tier,
                bool(is_live),
                limits["per_minute"],
                limits["per_day"],
                self._ts(utcnow()),
            ),
        )
        record = self.get_api_key_by_hash(hash_api_key(raw_key))
        if record is None:
            raise RuntimeError(f"API key {key_id} was not readable after insert.")
        return raw_key, record

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKeyRecord]:
        row = self._fetchone("SELECT * FROM api_keys WHERE key_hash=?", (key_hash,))
        if not row:
            return None
        tier = row.get("tier") or "free"
        limits = TIER_LIMITS.get(tier) or TIER_LIMITS["free"]
        return ApiKeyRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tier=tier,
            is_live=bool(row.get("is_live")),
            rate_limit_per_min=int(row.get("rate_limit_per_min") or limits["per_minute"]),
            rate_limit_per_day=int(row.get("rate_limit_per_day") or limits["per_day"]),
            name=row.get("name") or "Default",
            revoked_at=parse_timestamp(row.get("revoked_at")),
        )

    def revoke_api_key(self, key_id: str) -> bool:
        n = self._execute(
            "UPDATE api_keys SET revoked_at=? WHERE id=? AND revoked_at IS NULL",
            (self._ts(utcnow()), key_id),
        )
        return n > 0

    def touch_api_key(self, key_id: str) -> None:
        self._execute("UPDATE api_keys SET last_used_at=? WHERE id=?", (self._ts(utcnow()), key_id))

    def count_recent_usage(self, key_id: str, since: datetime) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM api_usage WHERE api_key_id=? AND created_at >= ?",
            (key_id, self._ts(since)),
        )
        return int((row or {}).get("n") or 0)

    def log_usage(
        self,
        *,
        api_key_id: str,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
    ) -> None:
        self._execute(
            """
            INSERT INTO api_usage (id, api_key_id, endpoint, method, status_code, response_time_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                api_key_id,
                endpoint,
                method,
                int(status_code),
                int(response_time_ms),
                self._ts(utcnow()),
            ),
        )


def build_campaign_store(settings: Settings):
    """Factory: SQLite (default) or Postgres (Railway).

    Enable Postgres store by setting:
      STORE_SOURCE=db
      DATABASE_URL=...
    """
    if settings.use_postgres and settings.database_url:
        from campaign_store_pg import CampaignStorePG

        return CampaignStorePG(settings.database_url)
    return CampaignStore(settings.store_db_path)
