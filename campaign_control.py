"""Pause / resume a launched campaign."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from campaign_store import CampaignStore
from config import Settings
from errors import Conflict, MetaAPIError, MissingToken, NotFound, ValidationFailed
from graph_client import GraphClient
from models import ApiKeyRecord, can_transition
from token_store import resolve_access_token, system_fallback_token

logger = logging.getLogger(__name__)

NOT_LAUNCHED_MESSAGE = "Campaign not found or has not been launched on Meta yet"

_ACTIONS = {
    "pause": ("PAUSED", "paused"),
    "resume": ("ACTIVE", "active"),
}


class CampaignController:
    def __init__(self, settings: Settings, store: CampaignStore, graph: GraphClient):
        self.settings = settings
        self.store = store
        self.graph = graph

    def set_status(
        self,
        campaign_id: str,
        owner: ApiKeyRecord,
        *,
        action: Optional[str] = "pause",
        meta_access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        action = action or "pause"
        if action not in _ACTIONS:
            raise ValidationFailed('`action` must be "pause" or "resume"')
        meta_status, new_status = _ACTIONS[action]

        resolved = self.store.resolve_campaign(campaign_id, owner)
        if resolved is None:
            raise NotFound(NOT_LAUNCHED_MESSAGE)

        if not can_transition(resolved.status, new_status):
            raise Conflict(
                f"Campaign is {resolved.status} and cannot be {'paused' if action == 'pause' else 'resumed'}",
                code="invalid_transition",
            )

        token = resolve_access_token(
            meta_access_token,
            resolved.stored_access_token,
            system_fallback_token(self.settings),
        )
        if not token:
            raise MissingToken(
                "`meta_access_token` is required, either in the request body or stored with the campaign"
            )

        result = self.graph.post(resolved.meta_campaign_id, {"status": meta_status}, token)
        if not result.ok:
            logger.error("Meta rejected %s for %s: %s", action, resolved.meta_campaign_id, result.raw_body)
            raise MetaAPIError(
                result.error_message or f"Meta API returned {result.http_status}",
                http_status=result.http_status,
                error=result.error,
            )

        try:
            self.store.update_campaign_status(resolved.source, resolved.record_id, new_status)
        except Exception as e:
            logger.warning(
                "Meta campaign %s is %s but the local %s row was not updated: %s",
                resolved.meta_campaign_id,
                meta_status,
                resolved.source,
                e,
            )

        return {
            "campaign_id": campaign_id,
            "status": new_status,
            "meta_campaign_id": resolved.meta_campaign_id,
        }
