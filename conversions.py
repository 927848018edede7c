"""conversions.py

Lead-quality feedback for Meta's Conversion API (CAPI).

good -> "Lead" event, value 100
bad  -> "Other" event, value 0 (tells the delivery system to deprioritise similar profiles)

Without a usable access token or pixel the quality is still recorded locally and
the call reports ``capi_sent: false``.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, Optional, Tuple

from campaign_store import CampaignStore
from config import Settings
from errors import MetaAPIError, ValidationFailed
from graph_client import GraphClient
from models import ApiKeyRecord, Business, Lead, utcnow
from token_store import resolve_access_token, system_fallback_token

logger = logging.getLogger(__name__)

QUALITY_EVENTS = {
    "good": ("Lead", 100),
    "bad": ("Other", 0),
}


def normalize_phone(phone: str) -> str:
    """Strip whitespace; a local number with a leading 0 becomes +61..."""
    p = re.sub(r"\s+", "", phone or "")
    if p.startswith("0"):
        p = "+61" + p[1:]
    return p


def split_full_name(full_name: str) -> Tuple[Optional[str], Optional[str]]:
    parts = (full_name or "").strip().split()
    if not parts:
        return None, None
    first = parts[0].lower()
    last = parts[-1].lower() if len(parts) > 1 else None
    return first, last


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_user_data(request_user_data: Optional[Dict[str, Any]], lead: Optional[Lead]) -> Dict[str, str]:
    """Request values win; stored lead fields fill the gaps. Values are normalised then hashed."""
    ud = request_user_data or {}
    plain: Dict[str, str] = {}

    if ud.get("email"):
        plain["em"] = str(ud["email"]).strip().lower()
    if ud.get("phone"):
        plain["ph"] = normalize_phone(str(ud["phone"]))
    if ud.get("first_name"):
        plain["fn"] = str(ud["first_name"]).strip().lower()
    if ud.get("last_name"):
        plain["ln"] = str(ud["last_name"]).strip().lower()

    if lead is not None:
        if lead.email and "em" not in plain:
            plain["em"] = lead.email.strip().lower()
        if lead.phone and "ph" not in plain:
            plain["ph"] = normalize_phone(lead.phone)
        if lead.name and "fn" not in plain:
            first, last = split_full_name(lead.name)
            if first:
                plain["fn"] = first
            if last and "ln" not in plain:
                plain["ln"] = last

    hashed: Dict[str, str] = {}
    for k, v in plain.items():
        if k == "ph":
            v = re.sub(r"\D", "", v)
        if v:
            hashed[k] = sha256_hex(v)
    return hashed


def build_event(
    *,
    campaign_id: str,
    lead_id: str,
    quality: str,
    user_data: Dict[str, str],
    meta_lead_id: Optional[str],
) -> Dict[str, Any]:
    event_name, value = QUALITY_EVENTS[quality]
    event: Dict[str, Any] = {
        "event_name": event_name,
        "event_time": int(utcnow().timestamp()),
        "action_source": "system",
        "user_data": user_data,
        "custom_data": {
            "lead_quality": quality,
            "lead_id": lead_id,
            "campaign_id": campaign_id,
            "value": value,
            "currency": "USD",
        },
    }
    # Dedup against the lead Meta already knows about.
    if meta_lead_id:
        event["event_id"] = meta_lead_id
    return event


class ConversionFeedbackSender:
    def __init__(self, settings: Settings, store: CampaignStore, graph: GraphClient):
        self.settings = settings
        self.store = store
        self.graph = graph

    def _owned_lead(self, lead_id: str, owner: ApiKeyRecord) -> Tuple[Optional[Lead], Optional[Business]]:
        """The lead and its business, only as far as they belong to the caller's key."""
        lead = self.store.get_lead(lead_id)
        if lead is None:
            return None, None

        business = self.store.get_business(lead.business_id) if lead.business_id else None
        if business is not None and business.user_id != owner.user_id:
            business = None

        campaign_owned = bool(lead.campaign_id) and (
            self.store.get_draft(lead.campaign_id, owner.id) is not None
            or self.store.resolve_campaign(lead.campaign_id, owner) is not None
        )
        if business is None and not campaign_owned:
            logger.warning("Lead %s does not belong to key %s; ignoring it", lead_id, owner.id)
            return None, None
        return lead, business

    def send(
        self,
        campaign_id: str,
        owner: ApiKeyRecord,
        *,
        lead_id: Optional[str],
        quality: Optional[str],
        meta_access_token: Optional[str] = None,
        pixel_id: Optional[str] = None,
        user_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not lead_id or not isinstance(lead_id, str):
            raise ValidationFailed("`lead_id` is required")
        if quality not in QUALITY_EVENTS:
            raise ValidationFailed('`quality` must be "good" or "bad"')

        draft = self.store.get_draft(campaign_id, owner.id)
        lead, business = self._owned_lead(lead_id, owner)

        if lead is not None:
            try:
                self.store.record_lead_quality(lead_id, quality)
            except Exception as e:
                logger.warning("Failed to record quality for lead %s: %s", lead_id, e)

        token = resolve_access_token(
            meta_access_token,
            draft.stored_access_token if draft else None,
            business.facebook_access_token if business else None,
            system_fallback_token(self.settings),
        )
        pixel_candidates = (
            pixel_id,
            draft.stored_pixel_id if draft else None,
            business.facebook_pixel_id if business else None,
            self.settings.pixel_id,
        )
        pixel = next((str(p).strip() for p in pixel_candidates if p and str(p).strip()), None)

        if not token or not pixel:
            logger.info("No Meta access token or pixel ID for lead %s; skipping CAPI call", lead_id)
            return {
                "success": True,
                "capi_sent": False,
                "message": "Conversion quality recorded but Meta CAPI not configured (missing access token or pixel ID)",
                "quality": quality,
                "lead_id": lead_id,
            }

        event = build_event(
            campaign_id=campaign_id,
            lead_id=lead_id,
            quality=quality,
            user_data=build_user_data(user_data, lead),
            meta_lead_id=lead.meta_lead_id if lead else None,
        )

        result = self.graph.post_json(f"{pixel}/events", {"data": [event]}, token)
        if not result.ok:
            logger.error("CAPI error for lead %s: %s", lead_id, result.raw_body)
            raise MetaAPIError(
                "Meta Conversion API returned an error",
                http_status=result.http_status,
                error=result.error,
                details=result.data,
            )

        logger.info("CAPI accepted %s signal for lead %s", quality, lead_id)
        return {
            "success": True,
            "capi_sent": True,
            "events_received": result.data.get("events_received") or 1,
            "quality": quality,
            "lead_id": lead_id,
        }
