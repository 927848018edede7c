"""graph_client.py

Thin wrapper around the Meta Marketing Graph API (REST via requests).

The client never raises for a non-2xx status or an ``{"error": ...}`` payload:
every call returns a ``GraphResult`` so callers decide per step whether to
abort, compensate or degrade.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from config import Settings

logger = logging.getLogger(__name__)

RAW_BODY_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class GraphResult:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    raw_body: str = ""
    http_status: int = 0

    @property
    def error(self) -> Optional[dict]:
        err = self.data.get("error")
        if isinstance(err, dict):
            return err
        if err:
            return {"message": str(err)}
        return None

    @property
    def error_message(self) -> Optional[str]:
        err = self.error
        return (err or {}).get("message")

    @property
    def error_code(self) -> Optional[int]:
        code = (self.error or {}).get("code")
        try:
            return int(code) if code is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def object_id(self) -> Optional[str]:
        oid = self.data.get("id")
        return str(oid) if oid else None


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = (ad_account_id or "").strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    return f"act_{ad_account_id}"


def parse_graph_body(raw_body: str) -> Dict[str, Any]:
    """Decode a Graph response body, synthesizing a ParseError for non-JSON."""
    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list):
        return {"data": payload}
    return {
        "error": {
            "message": f"Non-JSON response: {raw_body[:RAW_BODY_EXCERPT_CHARS]}",
            "type": "ParseError",
            "code": -1,
        }
    }


class GraphClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.base_url = settings.graph_base_url

    def _auth_fields(self, access_token: str) -> Dict[str, str]:
        fields = {"access_token": access_token}

        # Required when "App Secret Proof for Server API calls" is enabled on the app.
        if self.settings.app_secret:
            fields["appsecret_proof"] = hmac.new(
                self.settings.app_secret.encode("utf-8"),
                access_token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
        return fields

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> GraphResult:
        url = self.base_url + "/" + path.lstrip("/")
        params = dict(params or {})
        auth = self._auth_fields(access_token)

        # Graph API accepts access_token as query or form field, never as a header here.
        if json_body is not None:
            json_body = {**json_body, **auth}
        elif method == "POST":
            data = {**(data or {}), **auth}
        else:
            params.update(auth)

        try:
            resp = self.session.request(
                method=method,
                url=url,
                params=params or None,
                data=data,
                json=json_body,
                timeout=self.settings.timeout_s,
            )
        except requests.RequestException as e:
            logger.error("Network error calling Meta %s %s: %s", method, path, e)
            return GraphResult(
                ok=False,
                data={"error": {"message": f"Network error calling Meta API: {e}", "type": "NetworkError", "code": -1}},
                raw_body="",
                http_status=0,
            )

        raw_body = resp.text or ""
        payload = parse_graph_body(raw_body)
        ok = 200 <= resp.status_code < 300 and "error" not in payload
        return GraphResult(ok=ok, data=payload, raw_body=raw_body, http_status=resp.status_code)

    def post(self, path: str, params: Dict[str, Any], access_token: str) -> GraphResult:
        form = {k: str(v) for k, v in params.items() if v is not None}
        return self._request("POST", path, access_token, data=form)

    def get(self, path: str, params: Optional[Dict[str, Any]], access_token: str) -> GraphResult:
        return self._request("GET", path, access_token, params=params)

    def delete(self, path: str, access_token: str) -> GraphResult:
        """DELETE a Graph object (campaign/lead form)."""
        return self._request("DELETE", path, access_token)

    def post_json(self, path: str, payload: Dict[str, Any], access_token: str) -> GraphResult:
        """JSON POST; the Conversion API takes access_token inside the body."""
        return self._request("POST", path, access_token, json_body=payload)
