from conftest import graph_ok
from models import utcnow

LAUNCH_BODY = {
    "meta_access_token": "USER_TOKEN",
    "meta_ad_account_id": "act_1",
    "meta_page_id": "PAGE_1",
}


def _draft(store, key_record, **kwargs):
    return store.create_draft(owner_key_id=key_record.id, business_name="Acme Plumbing", **kwargs)


def test_root_and_health(client):
    assert client.get("/").json()["ok"] is True
    assert client.get("/health").json() == {"ok": True}


def test_missing_api_key(client):
    r = client.post("/campaigns/camp_1/launch", json=LAUNCH_BODY)

    assert r.status_code == 401
    assert r.json()["error"]["code"] == "missing_api_key"
    assert r.headers["Access-Control-Allow-Origin"] == "*"


def test_invalid_api_key(client):
    r = client.post("/campaigns/camp_1/launch", json=LAUNCH_BODY, headers={"Authorization": "Bearer ll_live_nope"})

    assert r.status_code == 401
    assert r.json()["error"]["code"] == "invalid_api_key"


def test_revoked_api_key(client, store, key_record, auth_headers):
    store.revoke_api_key(key_record.id)

    r = client.post("/campaigns/camp_1/launch", json=LAUNCH_BODY, headers=auth_headers)

    assert r.status_code == 401
    assert r.json()["error"]["code"] == "revoked_api_key"


def test_rate_limit_exceeded(client, store):
    raw, record = store.create_api_key(user_id="user_free", tier="free")
    for _ in range(10):
        store.log_usage(api_key_id=record.id, endpoint="/x", method="GET", status_code=200, response_time_ms=1)

    r = client.get("/campaigns/camp_1/performance", headers={"Authorization": f"Bearer {raw}"})

    assert r.status_code == 429
    body = r.json()["error"]
    assert body["code"] == "rate_limit_exceeded"
    assert body["retry_after"] == 60
    assert r.headers["X-RateLimit-Limit"] == "10"
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert int(r.headers["X-RateLimit-Reset"]) > 0


def test_options_is_bare_200_with_cors(client):
    r = client.options("/campaigns/camp_1/launch")

    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["Access-Control-Allow-Origin"] == "*"
    assert "authorization" in r.headers["Access-Control-Allow-Headers"]


def test_launch_end_to_end(client, graph, store, key_record, auth_headers):
    draft = _draft(store, key_record)

    r = client.post(f"/campaigns/{draft.id}/launch", json=LAUNCH_BODY, headers=auth_headers)

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "active"
    assert body["meta_campaign_id"] == "cmp_1001"
    assert body["daily_budget_cents"] == 2000
    assert r.headers["X-RateLimit-Limit"] == "60"
    assert r.headers["X-RateLimit-Remaining"] == "60"
    assert r.headers["Access-Control-Allow-Origin"] == "*"
    assert graph.paths("POST")[0] == "act_1/campaigns"

    usage = store._fetchall("SELECT endpoint, method, status_code FROM api_usage WHERE api_key_id=?", (key_record.id,))
    assert usage == [{"endpoint": "/campaigns/{campaign_id}/launch", "method": "POST", "status_code": 200}]


def test_launch_missing_credentials_is_400(client, graph, auth_headers):
    r = client.post("/campaigns/camp_1/launch", json={"meta_access_token": "T"}, headers=auth_headers)

    assert r.status_code == 400
    assert r.json()["error"] == {
        "code": "validation_error",
        "message": '`meta_ad_account_id` is required (e.g. "act_123456789")',
    }
    assert graph.calls == []


def test_launch_without_body_is_400(client, auth_headers):
    r = client.post("/campaigns/camp_1/launch", headers=auth_headers)

    assert r.status_code == 400
    assert r.json()["error"]["message"] == "`meta_access_token` is required"


def test_malformed_body_is_400_with_details(client, auth_headers):
    r = client.post(
        "/campaigns/camp_1/launch",
        json={**LAUNCH_BODY, "variant_index": -1},
        headers=auth_headers,
    )

    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "validation_error"
    assert err["details"][0]["loc"][-1] == "variant_index"


def test_launch_meta_failure_is_502(client, graph, auth_headers):
    graph.fail("POST", "adsets", message="Invalid targeting spec")

    r = client.post("/campaigns/camp_1/launch", json=LAUNCH_BODY, headers=auth_headers)

    assert r.status_code == 502
    err = r.json()["error"]
    assert err["code"] == "meta_api_error"
    assert err["step"] == "adset"
    assert err["meta_error"]["message"] == "Invalid targeting spec"
    assert graph.paths("DELETE") == ["cmp_1001"]


def test_unexpected_error_is_500(client, store, auth_headers, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(store, "get_draft", boom)

    r = client.post("/campaigns/camp_1/launch", json=LAUNCH_BODY, headers=auth_headers)

    assert r.status_code == 500
    err = r.json()["error"]
    assert err["code"] == "internal_error"
    assert err["details"] == "disk on fire"


def test_pause_unknown_campaign_is_404(client, auth_headers):
    r = client.post("/campaigns/camp_missing/pause", json={"meta_access_token": "T"}, headers=auth_headers)

    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Campaign not found or has not been launched on Meta yet"


def test_pause_then_resume(client, graph, store, key_record, auth_headers):
    draft = _draft(store, key_record)
    client.post(f"/campaigns/{draft.id}/launch", json=LAUNCH_BODY, headers=auth_headers)

    paused = client.post(f"/campaigns/{draft.id}/pause", json={"meta_access_token": "T"}, headers=auth_headers)
    resumed = client.post(
        f"/campaigns/{draft.id}/pause",
        json={"action": "resume", "meta_access_token": "T"},
        headers=auth_headers,
    )

    assert paused.json()["status"] == "paused"
    assert resumed.json()["status"] == "active"
    assert graph.calls[-2]["payload"] == {"status": "PAUSED"}
    assert graph.calls[-1]["payload"] == {"status": "ACTIVE"}


def test_performance_returns_report_and_stores_snapshot(client, graph, store, key_record, auth_headers):
    draft = _draft(store, key_record)
    launched = client.post(f"/campaigns/{draft.id}/launch", json=LAUNCH_BODY, headers=auth_headers).json()
    meta_id = launched["meta_campaign_id"]
    graph.on(
        "GET",
        f"{meta_id}/insights",
        graph_ok({"data": [{"impressions": "120", "clicks": "6", "spend": "4.50", "actions": []}]}),
    )

    r = client.get(f"/campaigns/{draft.id}/performance", params={"meta_access_token": "Q"}, headers=auth_headers)

    assert r.status_code == 200
    body = r.json()
    assert body["performance_status"] == "learning"
    assert body["metrics"]["spend_cents"] == 450
    assert body["metrics"]["ctr_pct"] == 5.0
    assert body["metrics"]["cpl_cents"] is None
    assert graph.calls[-1]["token"] == "Q"

    row = store._fetchone("SELECT impressions, spend_cents FROM campaigns WHERE meta_campaign_id=?", (meta_id,))
    assert row == {"impressions": 120, "spend_cents": 450}


def test_performance_token_expired_is_401(client, graph, store, key_record, auth_headers):
    draft = _draft(store, key_record)
    store.mark_draft_launched(
        draft.id,
        key_record.id,
        meta_campaign_id="cmp_9",
        meta_adset_id="as_9",
        meta_ad_id="ad_9",
        meta_leadform_id="lf_9",
        launched_at=utcnow(),
    )
    graph.fail("GET", "cmp_9/insights", message="Session has expired", code=190, http_status=400)

    r = client.get(f"/campaigns/{draft.id}/performance", params={"meta_access_token": "Q"}, headers=auth_headers)

    assert r.status_code == 401
    assert r.json()["error"]["code"] == "token_expired"


def test_conversions_without_capi_config(client, auth_headers):
    r = client.post(
        "/campaigns/camp_1/conversions",
        json={"lead_id": "lead_1", "quality": "good"},
        headers=auth_headers,
    )

    assert r.status_code == 200
    assert r.json()["capi_sent"] is False


def test_conversions_bad_quality_is_400(client, auth_headers):
    r = client.post(
        "/campaigns/camp_1/conversions",
        json={"lead_id": "lead_1", "quality": "great"},
        headers=auth_headers,
    )

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "validation_error"
