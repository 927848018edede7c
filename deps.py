"""FastAPI dependency providers (overridden in tests)."""

from __future__ import annotations

from functools import lru_cache

from campaign_store import CampaignStore, build_campaign_store
from config import Settings
from graph_client import GraphClient


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def _cached_store() -> CampaignStore:
    return build_campaign_store(get_settings())


@lru_cache(maxsize=1)
def _cached_graph_client() -> GraphClient:
    return GraphClient(get_settings())


def get_store() -> CampaignStore:
    return _cached_store()


def get_graph_client() -> GraphClient:
    return _cached_graph_client()
