"""Record types persisted by the campaign store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DRAFT_STATUSES = ("draft", "active", "paused", "ended")
PERFORMANCE_STATUSES = ("learning", "healthy", "underperforming", "paused")
LEAD_STATUSES = ("new", "contacted", "won", "lost")

# draft -> active -> paused <-> active -> ended; nothing returns to draft.
_ALLOWED_TRANSITIONS = {
    "draft": {"active"},
    "active": {"paused", "ended"},
    "paused": {"active", "ended"},
    "ended": set(),
}

SOURCE_DRAFTS = "api_campaigns"
SOURCE_LIVE = "campaigns"

TIER_LIMITS = {
    "free": {"per_minute": 10, "per_day": 100},
    "pro": {"per_minute": 60, "per_day": 5000},
    "enterprise": {"per_minute": 300, "per_day": 50000},
}


def can_transition(current: Optional[str], new: str) -> bool:
    if current == new:
        return True
    return new in _ALLOWED_TRANSITIONS.get(current or "draft", set())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accepts datetimes (Postgres) or ISO strings (SQLite); always returns UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def load_json(value: Any, default: Any) -> Any:
    """JSON columns come back as text from SQLite and decoded from Postgres jsonb."""
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


@dataclass
class AdVariant:
    headline: Optional[str] = None
    copy: Optional[str] = None
    cta: Optional[str] = None
    angle: Optional[str] = None
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "AdVariant":
        d = d or {}
        return AdVariant(
            headline=d.get("headline") or None,
            copy=d.get("copy") or None,
            cta=d.get("cta") or None,
            angle=d.get("angle") or None,
            image_prompt=d.get("image_prompt") or d.get("imagePrompt") or None,
            image_url=d.get("image_url") or None,
        )


@dataclass
class CampaignDraft:
    id: str
    owner_key_id: str
    status: str = "draft"
    user_id: Optional[str] = None
    url: Optional[str] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    strategy: Dict[str, Any] = field(default_factory=dict)
    targeting: Dict[str, Any] = field(default_factory=dict)
    variants: List[AdVariant] = field(default_factory=list)
    daily_budget_cents: Optional[int] = None
    objective: Optional[str] = None
    stored_access_token: Optional[str] = None
    stored_pixel_id: Optional[str] = None
    meta_campaign_id: Optional[str] = None
    meta_adset_id: Optional[str] = None
    meta_ad_id: Optional[str] = None
    meta_leadform_id: Optional[str] = None
    launched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "CampaignDraft":
        return CampaignDraft(
            id=str(row["id"]),
            owner_key_id=str(row["api_key_id"]),
            status=row.get("status") or "draft",
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            url=row.get("url"),
            business_name=row.get("business_name"),
            business_type=row.get("business_type"),
            strategy=load_json(row.get("strategy"), {}),
            targeting=load_json(row.get("targeting"), {}),
            variants=[AdVariant.from_dict(v) for v in load_json(row.get("variants"), []) if isinstance(v, dict)],
            daily_budget_cents=row.get("daily_budget_cents"),
            objective=row.get("objective"),
            stored_access_token=row.get("meta_access_token") or None,
            stored_pixel_id=row.get("meta_pixel_id") or None,
            meta_campaign_id=row.get("meta_campaign_id") or None,
            meta_adset_id=row.get("meta_adset_id") or None,
            meta_ad_id=row.get("meta_ad_id") or None,
            meta_leadform_id=row.get("meta_leadform_id") or None,
            launched_at=parse_timestamp(row.get("launched_at")),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass
class LiveCampaign:
    meta_campaign_id: str
    meta_adset_id: str
    meta_ad_id: str
    meta_leadform_id: str
    name: str
    status: str = "active"
    daily_budget_cents: int = 0
    radius_km: int = 0
    ad_headline: Optional[str] = None
    ad_copy: Optional[str] = None
    ad_image_url: Optional[str] = None
    leads_count: int = 0
    spend_cents: int = 0
    impressions: int = 0
    clicks: int = 0
    cpl_cents: Optional[int] = None
    performance_status: str = "learning"
    launched_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    api_key_id: Optional[str] = None
    business_id: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class Business:
    id: str
    user_id: Optional[str]
    name: Optional[str]
    facebook_access_token: Optional[str] = None
    facebook_page_id: Optional[str] = None
    facebook_ad_account_id: Optional[str] = None
    facebook_pixel_id: Optional[str] = None


@dataclass(frozen=True)
class Lead:
    id: str
    campaign_id: Optional[str]
    business_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    meta_lead_id: Optional[str] = None
    status: str = "new"


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    user_id: str
    tier: str
    is_live: bool
    rate_limit_per_min: int
    rate_limit_per_day: int
    name: str
    revoked_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResolvedCampaign:
    """A launched campaign found through the draft table or the live table."""

    source: str
    record_id: str
    meta_campaign_id: str
    status: str
    launched_at: Optional[datetime]
    created_at: Optional[datetime]
    stored_access_token: Optional[str]
    stored_pixel_id: Optional[str]
    business_id: Optional[str]
