# token_store.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import psycopg

from config import Settings
from models import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredToken:
    access_token: str
    expires_at: Optional[datetime]

    def usable(self, *, buffer_minutes: int = 10) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > utcnow() + timedelta(minutes=buffer_minutes)


def get_stored_token(
    database_url: str,
    *,
    token_id: str = "meta_graph",
) -> Optional[StoredToken]:
    """Reads the system token row kept fresh by the token manager."""
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT access_token, expires_at
                FROM graph_api_tokens
                WHERE id = %s
                """,
                (token_id,),
            )
            row = cur.fetchone()
    if not row or not row[0]:
        return None
    access_token, expires_at = row
    return StoredToken(access_token=access_token, expires_at=parse_timestamp(expires_at))


def system_fallback_token(settings: Settings) -> Optional[str]:
    """Last link of every token chain: the DB token row, then META_SYSTEM_USER_TOKEN."""
    if settings.token_source == "db" and settings.database_url:
        try:
            tok = get_stored_token(settings.database_url)
        except psycopg.Error as e:
            logger.warning("Could not read graph_api_tokens: %s", e)
            tok = None
        if tok and tok.usable():
            return tok.access_token
        if tok:
            logger.warning(
                "System token in graph_api_tokens is expired/near-expiry (expires_at=%s)",
                tok.expires_at.isoformat() if tok.expires_at else None,
            )
    return settings.system_user_token or None


def resolve_access_token(*candidates: Optional[str]) -> Optional[str]:
    """First non-empty token wins (request override, stored, business, system)."""
    for c in candidates:
        if c and str(c).strip():
            return str(c).strip()
    return None
