"""Shared fixtures: a scripted Graph client, a throwaway SQLite store and a TestClient."""

import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from fastapi.testclient import TestClient

from api import app
from campaign_store import CampaignStore
from config import Settings
from deps import get_graph_client, get_settings, get_store
from graph_client import GraphResult

_ID_PREFIXES = {
    "campaigns": "cmp",
    "adsets": "as",
    "leadgen_forms": "lf",
    "adcreatives": "cr",
    "ads": "ad",
}

Matcher = Union[str, Callable[[str], bool]]


def _matches(matcher: Matcher, path: str) -> bool:
    if callable(matcher):
        return matcher(path)
    return path == matcher or path.endswith("/" + matcher)


def graph_error(message: str = "Invalid parameter", code: int = 100, http_status: int = 400) -> GraphResult:
    data = {"error": {"message": message, "type": "OAuthException", "code": code}}
    return GraphResult(ok=False, data=data, raw_body=json.dumps(data), http_status=http_status)


def graph_ok(data: Dict[str, Any]) -> GraphResult:
    return GraphResult(ok=True, data=data, raw_body=json.dumps(data), http_status=200)


class FakeGraph:
    """Records every call; answers with scripted results or sensible defaults."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._rules: List[Dict[str, Any]] = []
        self._seq = itertools.count(1001)

    def on(self, method: str, matcher: Matcher, result: GraphResult) -> "FakeGraph":
        self._rules.append({"method": method, "matcher": matcher, "result": result})
        return self

    def fail(self, method: str, matcher: Matcher, **kwargs: Any) -> "FakeGraph":
        return self.on(method, matcher, graph_error(**kwargs))

    def _answer(self, method: str, path: str) -> GraphResult:
        for rule in reversed(self._rules):
            if rule["method"] == method and _matches(rule["matcher"], path):
                return rule["result"]

        if method == "POST":
            kind = path.rsplit("/", 1)[-1]
            if "/" in path and kind in _ID_PREFIXES:
                return graph_ok({"id": f"{_ID_PREFIXES[kind]}_{next(self._seq)}"})
            return graph_ok({"success": True})
        if method == "DELETE":
            return graph_ok({"success": True})
        if method == "POST_JSON":
            return graph_ok({"events_received": 1, "fbtrace_id": "trace"})
        return graph_ok({"data": []})

    def _record(self, method: str, path: str, token: str, payload: Optional[Dict[str, Any]]) -> GraphResult:
        self.calls.append({"method": method, "path": path, "token": token, "payload": dict(payload or {})})
        return self._answer(method, path)

    def post(self, path: str, params: Dict[str, Any], access_token: str) -> GraphResult:
        return self._record("POST", path, access_token, params)

    def get(self, path: str, params: Optional[Dict[str, Any]], access_token: str) -> GraphResult:
        return self._record("GET", path, access_token, params)

    def delete(self, path: str, access_token: str) -> GraphResult:
        return self._record("DELETE", path, access_token, None)

    def post_json(self, path: str, payload: Dict[str, Any], access_token: str) -> GraphResult:
        return self._record("POST_JSON", path, access_token, payload)

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [c["path"] for c in self.calls if method is None or c["method"] == method]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_db_path=str(tmp_path / "lead_launcher.db"),
        ad_link_url="https://example.com/",
        privacy_policy_url="https://example.com/privacy",
    )


@pytest.fixture
def store(settings):
    return CampaignStore(settings.store_db_path)


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def api_key(store):
    raw_key, record = store.create_api_key(user_id="user_1", tier="pro", name="Tests")
    return raw_key, record


@pytest.fixture
def key_record(api_key):
    return api_key[1]


@pytest.fixture
def auth_headers(api_key):
    return {"Authorization": f"Bearer {api_key[0]}"}


@pytest.fixture
def client(settings, store, graph):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_graph_client] = lambda: graph
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
