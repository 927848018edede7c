"""Performance sync worker.

Why this exists:
- /campaigns/{id}/performance only refreshes the campaigns mirror when a client asks.
- Dashboards read the mirror, so active campaigns need a periodic refresh.

Deploy on Railway as a separate service:
  Start command: python worker.py

Recommended env:
  STORE_SOURCE=db
  DATABASE_URL=...
  META_SYSTEM_USER_TOKEN=... (or META_TOKEN_SOURCE=db)
"""

from __future__ import annotations

import logging
import time
from typing import Dict

from campaign_store import CampaignStore, build_campaign_store
from config import Settings, configure_logging
from errors import MetaAPIError, MissingToken, ServiceError, TokenExpired
from graph_client import GraphClient
from performance import PerformanceSync

logger = logging.getLogger("worker")

RATE_LIMIT_SLEEP_S = 60


def _is_rate_limited(e: MetaAPIError) -> bool:
    return any(phrase in str(e).lower() for phrase in ("too many calls", "rate limit", "request limit"))


def sync_once(settings: Settings, store: CampaignStore, graph: GraphClient) -> Dict[str, int]:
    """Sync one batch of active campaigns. Returns counts by outcome."""
    sync = PerformanceSync(settings, store, graph)
    counts = {"synced": 0, "skipped": 0, "failed": 0, "rate_limited": 0}

    for resolved in store.list_syncable_campaigns(limit=settings.worker_batch_limit):
        try:
            report = sync.sync_resolved(resolved)
        except (MissingToken, TokenExpired) as e:
            logger.warning("Skipping %s: %s", resolved.meta_campaign_id, e.message)
            counts["skipped"] += 1
            continue
        except MetaAPIError as e:
            if _is_rate_limited(e):
                # Stop this batch; the next loop picks up where we left off (oldest sync first).
                logger.warning("Rate limit hit, ending batch early: %s", e)
                counts["rate_limited"] = 1
                break
            logger.error("Sync failed for %s: %s", resolved.meta_campaign_id, e)
            counts["failed"] += 1
            continue
        except ServiceError as e:
            logger.error("Sync failed for %s: %s", resolved.meta_campaign_id, e)
            counts["failed"] += 1
            continue

        sync.save_snapshot(report)
        counts["synced"] += 1

    return counts


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings)

    store = build_campaign_store(settings)
    graph = GraphClient(settings)

    logger.info("Worker loop starting. POLL_S=%s BATCH=%s", settings.worker_poll_s, settings.worker_batch_limit)

    while True:
        try:
            counts = sync_once(settings, store, graph)
            logger.info("Sync pass done: %s", counts)
            if counts["rate_limited"]:
                logger.warning("Rate limit hit, sleeping %ss before the next pass", RATE_LIMIT_SLEEP_S)
                time.sleep(RATE_LIMIT_SLEEP_S)
        except Exception:
            logger.exception("Sync pass crashed")

        time.sleep(settings.worker_poll_s)


if __name__ == "__main__":
    main()
