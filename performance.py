"""performance.py

Lifetime insights for a launched campaign, plus a health classification.

Classification (first match wins):
  1. stored status is paused                           -> paused
  2. < 48h since launch (or creation) or < 500 impr.   -> learning
  3. CPL >= $30                                        -> underperforming
  4. spend > $50 with zero leads                       -> underperforming
  5. CPL < $30 with at least one lead                  -> healthy
  6. otherwise                                         -> learning
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from campaign_store import CampaignStore
from config import Settings
from errors import MetaAPIError, MissingToken, NotFound, ParseFailure, TokenExpired
from graph_client import GraphClient
from models import ApiKeyRecord, ResolvedCampaign, isoformat, utcnow
from token_store import resolve_access_token, system_fallback_token

logger = logging.getLogger(__name__)

LEARNING_HOURS = 48
LEARNING_IMPRESSIONS = 500
CPL_THRESHOLD_CENTS = 3000
SPEND_WITHOUT_LEADS_CENTS = 5000
EXPIRED_TOKEN_CODE = 190

INSIGHTS_FIELDS = "impressions,clicks,spend,actions"


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def compute_cpl_cents(spend_cents: int, leads_count: int) -> Optional[int]:
    if leads_count > 0:
        return _round_half_up(spend_cents / leads_count)
    return None


def compute_ctr_pct(clicks: int, impressions: int) -> float:
    if impressions > 0:
        return _round_half_up(clicks / impressions * 10000) / 100
    return 0


def hours_since(launched_at: Optional[datetime], created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    ref = launched_at or created_at
    if ref is None:
        return 0.0
    now = now or utcnow()
    return (now - ref).total_seconds() / 3600


def classify_performance(
    status: Optional[str],
    launched_at: Optional[datetime],
    created_at: Optional[datetime],
    impressions: int,
    spend_cents: int,
    leads_count: int,
    cpl_cents: Optional[int],
    now: Optional[datetime] = None,
) -> str:
    if status == "paused":
        return "paused"
    if hours_since(launched_at, created_at, now) < LEARNING_HOURS or impressions < LEARNING_IMPRESSIONS:
        return "learning"
    if cpl_cents is not None and cpl_cents >= CPL_THRESHOLD_CENTS:
        return "underperforming"
    if spend_cents > SPEND_WITHOUT_LEADS_CENTS and leads_count == 0:
        return "underperforming"
    if cpl_cents is not None and cpl_cents < CPL_THRESHOLD_CENTS and leads_count >= 1:
        return "healthy"
    return "learning"


def _to_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(float(value))


def parse_insights(payload: Dict[str, Any]) -> Dict[str, int]:
    """Reads data[0] of an insights response. An empty data list means no delivery yet."""
    rows = payload.get("data") or []
    if not isinstance(rows, list):
        raise ParseFailure("Unexpected insights payload from Meta", details=str(rows)[:500])
    row = rows[0] if rows else {}

    try:
        impressions = _to_int(row.get("impressions"))
        clicks = _to_int(row.get("clicks"))
        spend_cents = _round_half_up(float(row.get("spend") or 0) * 100)
        leads_count = 0
        for action in row.get("actions") or []:
            if isinstance(action, dict) and action.get("action_type") == "lead":
                leads_count = _to_int(action.get("value"))
                break
    except (TypeError, ValueError) as e:
        raise ParseFailure(f"Could not parse insights from Meta: {e}", details=str(row)[:500])

    return {
        "impressions": impressions,
        "clicks": clicks,
        "spend_cents": spend_cents,
        "leads_count": leads_count,
    }


@dataclass(frozen=True)
class PerformanceReport:
    campaign_id: str
    meta_campaign_id: str
    status: str
    performance_status: str
    impressions: int
    clicks: int
    spend_cents: int
    leads_count: int
    cpl_cents: Optional[int]
    ctr_pct: float
    hours_since_launch: float
    last_synced_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "status": self.status,
            "performance_status": self.performance_status,
            "metrics": {
                "impressions": self.impressions,
                "clicks": self.clicks,
                "spend_cents": self.spend_cents,
                "leads_count": self.leads_count,
                "cpl_cents": self.cpl_cents,
                "ctr_pct": self.ctr_pct,
            },
            "hours_since_launch": self.hours_since_launch,
            "last_synced_at": isoformat(self.last_synced_at),
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "spend_cents": self.spend_cents,
            "leads_count": self.leads_count,
            "cpl_cents": self.cpl_cents,
            "performance_status": self.performance_status,
            "last_synced_at": self.last_synced_at,
        }


class PerformanceSync:
    def __init__(self, settings: Settings, store: CampaignStore, graph: GraphClient):
        self.settings = settings
        self.store = store
        self.graph = graph

    def sync(self, campaign_id: str, owner: ApiKeyRecord, query_token: Optional[str] = None) -> PerformanceReport:
        resolved = self.store.resolve_campaign(campaign_id, owner)
        if resolved is None:
            raise NotFound("Campaign not found or has not been launched on Meta yet")
        return self.sync_resolved(resolved, query_token=query_token, campaign_id=campaign_id)

    def sync_resolved(
        self,
        resolved: ResolvedCampaign,
        *,
        query_token: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> PerformanceReport:
        token = resolve_access_token(
            query_token,
            resolved.stored_access_token,
            system_fallback_token(self.settings),
        )
        if not token:
            raise MissingToken("A Meta access token is required. Pass `meta_access_token` as a query parameter.")

        result = self.graph.get(
            f"{resolved.meta_campaign_id}/insights",
            {"fields": INSIGHTS_FIELDS, "date_preset": "lifetime"},
            token,
        )
        if not result.ok:
            logger.error("Meta insights error for %s: %s", resolved.meta_campaign_id, result.raw_body)
            if result.http_status == 401 or result.error_code == EXPIRED_TOKEN_CODE:
                raise TokenExpired("Meta access token has expired. Please provide a fresh token.")
            raise MetaAPIError(
                result.error_message or f"Meta API returned {result.http_status}",
                http_status=result.http_status,
                error=result.error,
            )

        metrics = parse_insights(result.data)
        now = utcnow()
        cpl_cents = compute_cpl_cents(metrics["spend_cents"], metrics["leads_count"])
        status = resolved.status or "unknown"

        return PerformanceReport(
            campaign_id=campaign_id or resolved.record_id,
            meta_campaign_id=resolved.meta_campaign_id,
            status=status,
            performance_status=classify_performance(
                status,
                resolved.launched_at,
                resolved.created_at,
                metrics["impressions"],
                metrics["spend_cents"],
                metrics["leads_count"],
                cpl_cents,
                now=now,
            ),
            impressions=metrics["impressions"],
            clicks=metrics["clicks"],
            spend_cents=metrics["spend_cents"],
            leads_count=metrics["leads_count"],
            cpl_cents=cpl_cents,
            ctr_pct=compute_ctr_pct(metrics["clicks"], metrics["impressions"]),
            hours_since_launch=_round_half_up(hours_since(resolved.launched_at, resolved.created_at, now) * 10) / 10,
            last_synced_at=now,
        )

    def save_snapshot(self, report: PerformanceReport) -> None:
        """Write metrics to the campaigns mirror. Failures are logged only."""
        try:
            n = self.store.save_performance_snapshot(report.meta_campaign_id, report.snapshot())
        except Exception as e:
            logger.warning("Failed to save performance snapshot for %s: %s", report.meta_campaign_id, e)
            return
        if not n:
            logger.info("No campaigns row mirrors %s; snapshot not stored", report.meta_campaign_id)
