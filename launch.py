"""launch.py

Turns a drafted campaign into a live Meta lead-generation campaign.

Creation order (each object depends on the ones before it):

    Campaign -> Ad Set -> Lead Form -> Creative -> Ad -> activate

Everything is created PAUSED; only once the Ad exists is it switched to
ACTIVE, followed by its Ad Set and Campaign. If any step after the Campaign
fails, the Campaign is deleted (Meta cascades the delete to its ad sets, ads
and creatives). Lead forms live on the Page and are not cascaded.

There are no retries: calling launch again creates a brand-new remote graph.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from campaign_store import CampaignStore
from config import Settings
from errors import Conflict, MetaAPIError, ValidationFailed
from graph_client import GraphClient, GraphResult, normalize_ad_account_id
from models import AdVariant, ApiKeyRecord, CampaignDraft, LiveCampaign, isoformat, utcnow

logger = logging.getLogger(__name__)


class LaunchStep(str, Enum):
    CAMPAIGN = "campaign"
    ADSET = "adset"
    LEADFORM = "leadform"
    CREATIVE = "creative"
    AD = "ad"
    ACTIVATE = "activate"


_STEP_FAILURE_MESSAGES = {
    LaunchStep.CAMPAIGN: "Failed to create campaign on Meta",
    LaunchStep.ADSET: "Failed to create ad set on Meta",
    LaunchStep.LEADFORM: "Failed to create lead form",
    LaunchStep.CREATIVE: "Failed to create ad creative",
    LaunchStep.AD: "Failed to create ad",
    LaunchStep.ACTIVATE: "Failed to activate ad",
}

CTA_TYPES = {
    "Get Quote": "GET_QUOTE",
    "Call Now": "CALL_NOW",
    "Learn More": "LEARN_MORE",
    "Sign Up": "SIGN_UP",
    "Book Now": "BOOK_NOW",
    "Contact Us": "CONTACT_US",
}
DEFAULT_CTA_TYPE = "LEARN_MORE"

DEFAULT_AGE_MIN = 25
DEFAULT_AGE_MAX = 65

LEAD_FORM_QUESTIONS = [
    {"type": "FULL_NAME"},
    {"type": "PHONE"},
    {"type": "EMAIL"},
    {"type": "CUSTOM", "key": "location", "label": "What area are you in?"},
]


def map_cta(label: Optional[str]) -> str:
    return CTA_TYPES.get((label or "").strip(), DEFAULT_CTA_TYPE)


@dataclass
class LaunchRequest:
    meta_access_token: Optional[str] = None
    meta_ad_account_id: Optional[str] = None
    meta_page_id: Optional[str] = None
    variant_index: int = 0
    daily_budget_cents: Optional[int] = None
    radius_km: Optional[int] = None

    def validate(self) -> None:
        """Each missing credential is its own validation error, checked before any remote call."""
        if not _present(self.meta_access_token):
            raise ValidationFailed("`meta_access_token` is required")
        if not _present(self.meta_ad_account_id):
            raise ValidationFailed('`meta_ad_account_id` is required (e.g. "act_123456789")')
        if not _present(self.meta_page_id):
            raise ValidationFailed("`meta_page_id` is required (Facebook Page ID for lead form)")


def _present(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


@dataclass
class LaunchInputs:
    business_name: str
    variant: AdVariant
    daily_budget_cents: int
    radius_km: int
    headline: str
    body: str
    cta: str
    image_url: Optional[str]
    campaign_name: str
    targeting: Dict[str, Any]


def select_variant(variants: List[AdVariant], index: int) -> AdVariant:
    if variants and 0 <= index < len(variants):
        return variants[index]
    if variants:
        return variants[0]
    return AdVariant()


def build_targeting(draft_targeting: Dict[str, Any], radius_km: int, default_country: str) -> Dict[str, Any]:
    t = draft_targeting or {}

    geo: Dict[str, Any] = {}
    custom = (t.get("geo_locations") or {}).get("custom_locations") or []
    if not custom:
        for p in t.get("geo_points") or []:
            if not isinstance(p, dict) or p.get("lat") is None or p.get("lng") is None:
                continue
            custom.append(
                {
                    "latitude": float(p["lat"]),
                    "longitude": float(p["lng"]),
                    "radius": int(radius_km),
                    "distance_unit": "kilometer",
                }
            )
    if custom:
        geo["custom_locations"] = custom
    else:
        geo["countries"] = [default_country]

    targeting: Dict[str, Any] = {
        "age_min": t.get("age_min") or DEFAULT_AGE_MIN,
        "age_max": t.get("age_max") or DEFAULT_AGE_MAX,
        "geo_locations": geo,
        "publisher_platforms": ["facebook", "instagram"],
        "facebook_positions": ["feed"],
        "instagram_positions": ["stream"],
    }

    interests = [
        {"id": str(i["id"]), **({"name": i["name"]} if i.get("name") else {})}
        for i in (t.get("interests") or [])
        if isinstance(i, dict) and i.get("id")
    ]
    if interests:
        targeting["flexible_spec"] = [{"interests": interests}]
    return targeting


def resolve_inputs(
    req: LaunchRequest,
    draft: Optional[CampaignDraft],
    settings: Settings,
    now: datetime,
) -> LaunchInputs:
    business_name = (draft.business_name if draft else None) or "Campaign"
    variant = select_variant(draft.variants if draft else [], req.variant_index or 0)
    draft_targeting = draft.targeting if draft else {}

    budget = req.daily_budget_cents or (draft.daily_budget_cents if draft else None) or settings.default_daily_budget_cents
    radius = req.radius_km or draft_targeting.get("radius_km") or settings.default_radius_km

    return LaunchInputs(
        business_name=business_name,
        variant=variant,
        daily_budget_cents=int(budget),
        radius_km=int(radius),
        headline=variant.headline or business_name,
        body=variant.copy or f"Check out {business_name}",
        cta=variant.cta or "Learn More",
        image_url=variant.image_url,
        campaign_name=f"{business_name} – API – {now.date().isoformat()}",
        targeting=build_targeting(draft_targeting, int(radius), settings.default_country),
    )


def build_object_story_spec(
    page_id: str,
    inputs: LaunchInputs,
    leadform_id: str,
    link_url: str,
) -> Dict[str, Any]:
    link_data: Dict[str, Any] = {
        "message": inputs.body,
        "name": inputs.headline,
        "link": link_url,
        "call_to_action": {
            "type": map_cta(inputs.cta),
            "value": {"lead_gen_form_id": leadform_id},
        },
    }
    if inputs.image_url:
        link_data["picture"] = inputs.image_url
    return {"page_id": page_id, "link_data": link_data}


def build_lead_form_params(business_name: str, privacy_url: str, now: datetime) -> Dict[str, str]:
    return {
        "name": f"{business_name} Lead Form – {int(now.timestamp() * 1000)}",
        "questions": json.dumps(LEAD_FORM_QUESTIONS),
        "privacy_policy": json.dumps({"url": privacy_url, "link_text": "Privacy Policy"}),
        "thank_you_page": json.dumps(
            {
                "title": "Thanks for your enquiry!",
                "body": f"{business_name} will be in touch shortly.",
                "button_type": "NONE",
            }
        ),
    }


@dataclass
class RemoteObjectGraph:
    """Remote objects created so far, in creation order."""

    created: List[Tuple[LaunchStep, str]] = field(default_factory=list)

    def record(self, step: LaunchStep, object_id: str) -> None:
        self.created.append((step, object_id))

    def get(self, step: LaunchStep) -> Optional[str]:
        for s, oid in self.created:
            if s == step:
                return oid
        return None

    @property
    def campaign_id(self) -> Optional[str]:
        return self.get(LaunchStep.CAMPAIGN)

    @property
    def leadform_id(self) -> Optional[str]:
        return self.get(LaunchStep.LEADFORM)


class LaunchOrchestrator:
    def __init__(self, settings: Settings, store: CampaignStore, graph: GraphClient):
        self.settings = settings
        self.store = store
        self.graph = graph

    def launch(self, campaign_id: str, owner: ApiKeyRecord, req: LaunchRequest) -> Dict[str, Any]:
        req.validate()

        lease_key = f"{owner.id}:{campaign_id}"
        if not self.store.acquire_launch_lease(lease_key, self.settings.launch_lease_ttl_s):
            raise Conflict(
                "A launch for this campaign is already in progress",
                code="launch_in_progress",
            )
        try:
            return self._launch(campaign_id, owner, req)
        finally:
            try:
                self.store.release_launch_lease(lease_key)
            except Exception as e:
                logger.warning("Failed to release launch lease %s: %s", lease_key, e)

    def _launch(self, campaign_id: str, owner: ApiKeyRecord, req: LaunchRequest) -> Dict[str, Any]:
        token = req.meta_access_token.strip()
        page_id = req.meta_page_id.strip()
        acct = normalize_ad_account_id(req.meta_ad_account_id)

        # The draft is advisory; ad-hoc launches fall back to defaults.
        draft = self.store.get_draft(campaign_id, owner.id)
        if draft is not None and draft.status == "ended":
            raise Conflict("Campaign has ended and cannot be launched", code="invalid_transition")
        now = utcnow()
        inputs = resolve_inputs(req, draft, self.settings, now)
        objects = RemoteObjectGraph()

        meta_campaign_id = self._create(
            objects,
            LaunchStep.CAMPAIGN,
            f"{acct}/campaigns",
            {
                "name": inputs.campaign_name,
                "objective": "OUTCOME_LEADS",
                "status": "PAUSED",
                "special_ad_categories": json.dumps([]),
            },
            token,
        )

        adset_id = self._create(
            objects,
            LaunchStep.ADSET,
            f"{acct}/adsets",
            {
                "name": f"{inputs.campaign_name} – Ad Set",
                "campaign_id": meta_campaign_id,
                "daily_budget": str(inputs.daily_budget_cents),
                "billing_event": "IMPRESSIONS",
                "optimization_goal": "LEAD_GENERATION",
                "bid_strategy": "LOWEST_COST_WITHOUT_CAP",
                "targeting": json.dumps(inputs.targeting),
                "promoted_object": json.dumps({"page_id": page_id}),
                "destination_type": "ON_AD",
                "status": "PAUSED",
                "start_time": isoformat(now),
            },
            token,
        )

        leadform_id = self._create(
            objects,
            LaunchStep.LEADFORM,
            f"{page_id}/leadgen_forms",
            build_lead_form_params(inputs.business_name, self.settings.privacy_policy_url, now),
            token,
        )

        creative_id = self._create(
            objects,
            LaunchStep.CREATIVE,
            f"{acct}/adcreatives",
            {
                "name": f"{inputs.campaign_name} – Creative",
                "object_story_spec": json.dumps(
                    build_object_story_spec(page_id, inputs, leadform_id, self.settings.ad_link_url)
                ),
            },
            token,
        )

        ad_id = self._create(
            objects,
            LaunchStep.AD,
            f"{acct}/ads",
            {
                "name": f"{inputs.campaign_name} – Ad",
                "adset_id": adset_id,
                # creative must be a JSON object containing creative_id
                "creative": json.dumps({"creative_id": creative_id}),
                "status": "PAUSED",
            },
            token,
        )

        self._activate(objects, ad_id=ad_id, adset_id=adset_id, meta_campaign_id=meta_campaign_id, token=token)

        launched_at = utcnow()
        self._persist(campaign_id, owner, draft, inputs, objects, ad_id, launched_at)

        logger.info(
            "Launched campaign %s: meta_campaign_id=%s adset=%s leadform=%s ad=%s",
            campaign_id,
            meta_campaign_id,
            adset_id,
            leadform_id,
            ad_id,
        )
        return {
            "id": campaign_id,
            "status": "active",
            "meta_campaign_id": meta_campaign_id,
            "meta_adset_id": adset_id,
            "meta_ad_id": ad_id,
            "meta_leadform_id": leadform_id,
            "daily_budget_cents": inputs.daily_budget_cents,
            "launched_at": isoformat(launched_at),
        }

    # -----------------------------
    # Steps
    # -----------------------------

    def _create(
        self,
        objects: RemoteObjectGraph,
        step: LaunchStep,
        path: str,
        params: Dict[str, Any],
        token: str,
    ) -> str:
        result = self.graph.post(path, params, token)
        if not result.ok or not result.object_id:
            self._fail(objects, step, result, token)
        objects.record(step, result.object_id)
        return result.object_id

    def _activate(
        self,
        objects: RemoteObjectGraph,
        *,
        ad_id: str,
        adset_id: str,
        meta_campaign_id: str,
        token: str,
    ) -> None:
        result = self.graph.post(ad_id, {"status": "ACTIVE"}, token)
        if not result.ok:
            self._fail(objects, LaunchStep.ACTIVATE, result, token)

        # The Ad is the object that must be ACTIVE for delivery; parents are best-effort.
        for label, object_id in (("ad set", adset_id), ("campaign", meta_campaign_id)):
            parent = self.graph.post(object_id, {"status": "ACTIVE"}, token)
            if not parent.ok:
                logger.warning(
                    "Failed to activate %s %s (launch continues): %s",
                    label,
                    object_id,
                    parent.raw_body[:500],
                )

    def _fail(self, objects: RemoteObjectGraph, step: LaunchStep, result: GraphResult, token: str) -> None:
        logger.error("Launch step %s failed (HTTP %s): %s", step.value, result.http_status, result.raw_body)
        self._compensate(objects, token)
        raise MetaAPIError(
            result.error_message or _STEP_FAILURE_MESSAGES[step],
            http_status=result.http_status,
            error=result.error,
            step=step.value,
        )

    def _compensate(self, objects: RemoteObjectGraph, token: str) -> None:
        """Delete the root Campaign; never raises, so the original failure is what gets reported."""
        if not objects.campaign_id:
            return

        targets = [("campaign", objects.campaign_id)]
        if objects.leadform_id:
            if self.settings.cleanup_lead_forms:
                targets.append(("lead form", objects.leadform_id))
            else:
                logger.warning("Lead form %s is orphaned after a failed launch", objects.leadform_id)

        for label, object_id in targets:
            try:
                res = self.graph.delete(object_id, token)
            except Exception as e:
                logger.warning("Cleanup of %s %s raised: %s", label, object_id, e)
                continue
            if not res.ok:
                logger.warning("Cleanup of %s %s failed: %s", label, object_id, res.raw_body[:500])

    def _persist(
        self,
        campaign_id: str,
        owner: ApiKeyRecord,
        draft: Optional[CampaignDraft],
        inputs: LaunchInputs,
        objects: RemoteObjectGraph,
        ad_id: str,
        launched_at: datetime,
    ) -> None:
        # The ads are live at this point; local write failures are logged, never raised.
        meta_campaign_id = objects.campaign_id
        adset_id = objects.get(LaunchStep.ADSET)
        leadform_id = objects.leadform_id

        if draft is not None:
            try:
                marked = self.store.mark_draft_launched(
                    campaign_id,
                    owner.id,
                    meta_campaign_id=meta_campaign_id,
                    meta_adset_id=adset_id,
                    meta_ad_id=ad_id,
                    meta_leadform_id=leadform_id,
                    launched_at=launched_at,
                )
            except Exception as e:
                logger.warning("Failed to mark draft %s launched: %s", campaign_id, e)
            else:
                if not marked:
                    logger.warning(
                        "Draft %s was not updated with meta_campaign_id=%s (ended or removed meanwhile)",
                        campaign_id,
                        meta_campaign_id,
                    )

        try:
            self.store.insert_live_campaign(
                LiveCampaign(
                    meta_campaign_id=meta_campaign_id,
                    meta_adset_id=adset_id,
                    meta_ad_id=ad_id,
                    meta_leadform_id=leadform_id,
                    name=inputs.campaign_name,
                    status="active",
                    daily_budget_cents=inputs.daily_budget_cents,
                    radius_km=inputs.radius_km,
                    ad_headline=inputs.headline,
                    ad_copy=inputs.body,
                    ad_image_url=inputs.image_url,
                    launched_at=launched_at,
                    api_key_id=owner.id,
                )
            )
        except Exception as e:
            logger.warning("Failed to insert reporting row for %s: %s", meta_campaign_id, e)
