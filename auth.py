"""auth.py

API-key authentication and per-minute rate limiting for the /campaigns routes.

Callers send ``Authorization: Bearer <api_key>``. The key is SHA-256 hashed and
looked up in ``api_keys``; the sliding one-minute window is counted from
``api_usage`` rows. Rate-limit headers are stashed on ``request.state`` so the
HTTP middleware can echo them on every response for the request (errors too).
"""

from __future__ import annotations

import logging
import math
import time
from datetime import timedelta
from typing import Dict, Optional

from fastapi import Depends, Header, Request

from campaign_store import CampaignStore, hash_api_key
from deps import get_store
from errors import AuthFailed, RateLimited
from models import TIER_LIMITS, ApiKeyRecord, utcnow

logger = logging.getLogger(__name__)

RATE_WINDOW_S = 60


def _rate_limit_headers(limit: int, used: int) -> Dict[str, str]:
    reset_at = math.ceil(time.time() + RATE_WINDOW_S)
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, limit - used)),
        "X-RateLimit-Reset": str(reset_at),
    }


def check_api_key(store: CampaignStore, authorization: Optional[str]) -> tuple[ApiKeyRecord, Dict[str, str]]:
    """Validate the bearer key and the per-minute window. Returns (key, rate-limit headers)."""
    auth_header = authorization or ""
    if not auth_header.startswith("Bearer "):
        raise AuthFailed("Authorization header must be: Bearer <api_key>", code="missing_api_key")

    raw_key = auth_header[7:].strip()
    if not raw_key:
        raise AuthFailed("API key is empty", code="missing_api_key")

    key = store.get_api_key_by_hash(hash_api_key(raw_key))
    if key is None:
        raise AuthFailed("The provided API key is not valid")
    if key.revoked_at is not None:
        raise AuthFailed("This API key has been revoked", code="revoked_api_key")

    limits = TIER_LIMITS.get(key.tier) or TIER_LIMITS["free"]
    per_min = key.rate_limit_per_min or limits["per_minute"]
    used = store.count_recent_usage(key.id, utcnow() - timedelta(seconds=RATE_WINDOW_S))
    headers = _rate_limit_headers(per_min, used)

    if used >= per_min:
        raise RateLimited(
            f"Rate limit exceeded. You may make {per_min} requests per minute on the {key.tier} tier.",
            headers=headers,
            retry_after=RATE_WINDOW_S,
        )
    return key, headers


def authenticate_request(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    store: CampaignStore = Depends(get_store),
) -> ApiKeyRecord:
    # The store is kept on the request so usage can be logged once the response is known.
    request.state.usage_store = store
    try:
        key, headers = check_api_key(store, authorization)
    except RateLimited as e:
        request.state.rate_limit_headers = e.headers
        raise

    request.state.rate_limit_headers = headers
    request.state.api_key = key

    try:
        store.touch_api_key(key.id)
    except Exception as e:
        logger.warning("Failed to update last_used_at for key %s: %s", key.id, e)
    return key
