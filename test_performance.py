from datetime import timedelta

import pytest

from conftest import graph_error, graph_ok
from errors import MetaAPIError, MissingToken, NotFound, ParseFailure, TokenExpired
from models import LiveCampaign, utcnow
from performance import (
    PerformanceSync,
    classify_performance,
    compute_cpl_cents,
    compute_ctr_pct,
    parse_insights,
)

INSIGHTS = {
    "data": [
        {
            "impressions": "1000",
            "clicks": "37",
            "spend": "20.00",
            "actions": [
                {"action_type": "link_click", "value": "37"},
                {"action_type": "lead", "value": "2"},
            ],
        }
    ]
}


def _launched(store, key_record, *, days_ago=10, token="STORED"):
    draft = store.create_draft(owner_key_id=key_record.id, meta_access_token=token)
    store.mark_draft_launched(
        draft.id,
        key_record.id,
        meta_campaign_id="cmp_1",
        meta_adset_id="as_1",
        meta_ad_id="ad_1",
        meta_leadform_id="lf_1",
        launched_at=utcnow() - timedelta(days=days_ago),
    )
    return draft


@pytest.fixture
def sync(settings, store, graph):
    return PerformanceSync(settings, store, graph)


def test_classification_examples():
    now = utcnow()
    ten_days_ago = now - timedelta(days=10)

    assert classify_performance("active", now, None, 10, 0, 0, None, now=now) == "learning"
    assert classify_performance("active", ten_days_ago, None, 1000, 6000, 0, None, now=now) == "underperforming"
    assert classify_performance("active", ten_days_ago, None, 1000, 2000, 2, 1000, now=now) == "healthy"


def test_classification_precedence():
    now = utcnow()
    old = now - timedelta(days=10)

    # paused beats everything, even a fresh campaign
    assert classify_performance("paused", now, None, 0, 0, 0, None, now=now) == "paused"
    assert classify_performance("active", old, None, 499, 9000, 0, None, now=now) == "learning"
    assert classify_performance("active", old, None, 1000, 9000, 3, 3000, now=now) == "underperforming"
    assert classify_performance("active", old, None, 1000, 5000, 0, None, now=now) == "learning"
    # falls back to created_at when never launched
    assert classify_performance("active", None, now - timedelta(hours=47), 1000, 0, 1, 100, now=now) == "learning"
    assert classify_performance("active", None, None, 1000, 0, 1, 100, now=now) == "learning"


def test_cpl_and_ctr():
    assert compute_cpl_cents(4500, 3) == 1500
    assert compute_cpl_cents(4500, 0) is None
    assert compute_cpl_cents(1001, 2) == 501
    assert compute_ctr_pct(37, 1000) == 3.7
    assert compute_ctr_pct(5, 0) == 0


def test_parse_insights_reads_lead_action():
    assert parse_insights(INSIGHTS) == {"impressions": 1000, "clicks": 37, "spend_cents": 2000, "leads_count": 2}


def test_parse_insights_empty_means_zero():
    assert parse_insights({"data": []}) == {"impressions": 0, "clicks": 0, "spend_cents": 0, "leads_count": 0}


@pytest.mark.parametrize(
    "payload",
    [
        {"data": {"impressions": "10"}},
        {"data": [{"impressions": "lots"}]},
    ],
)
def test_parse_insights_malformed(payload):
    with pytest.raises(ParseFailure):
        parse_insights(payload)


def test_sync_builds_report(sync, graph, store, key_record):
    draft = _launched(store, key_record)
    graph.on("GET", "cmp_1/insights", graph_ok(INSIGHTS))

    report = sync.sync(draft.id, key_record, query_token="QUERY")

    call = graph.calls[0]
    assert call["token"] == "QUERY"
    assert call["payload"]["date_preset"] == "lifetime"
    assert call["payload"]["fields"] == "impressions,clicks,spend,actions"

    body = report.to_dict()
    assert body["campaign_id"] == draft.id
    assert body["status"] == "active"
    assert body["performance_status"] == "healthy"
    assert body["metrics"] == {
        "impressions": 1000,
        "clicks": 37,
        "spend_cents": 2000,
        "leads_count": 2,
        "cpl_cents": 1000,
        "ctr_pct": 3.7,
    }
    assert 239.9 <= body["hours_since_launch"] <= 240.1
    assert body["last_synced_at"].endswith("Z")


def test_sync_uses_stored_token_without_override(sync, graph, store, key_record):
    draft = _launched(store, key_record)
    sync.sync(draft.id, key_record)
    assert graph.calls[0]["token"] == "STORED"


def test_sync_without_any_token(sync, graph, store, key_record):
    draft = _launched(store, key_record, token=None)

    with pytest.raises(MissingToken):
        sync.sync(draft.id, key_record)
    assert graph.calls == []


def test_sync_unknown_campaign(sync, key_record):
    with pytest.raises(NotFound):
        sync.sync("nope", key_record, query_token="Q")


@pytest.mark.parametrize(
    "result",
    [
        graph_error(message="Anything at all", code=100, http_status=401),
        graph_error(message="Error validating access token", code=190, http_status=400),
    ],
)
def test_expired_token_is_reported_as_token_expired(sync, graph, store, key_record, result):
    draft = _launched(store, key_record)
    graph.on("GET", "cmp_1/insights", result)

    with pytest.raises(TokenExpired) as exc:
        sync.sync(draft.id, key_record)

    assert exc.value.status_code == 401
    assert exc.value.code == "token_expired"


def test_other_meta_errors_are_502(sync, graph, store, key_record):
    draft = _launched(store, key_record)
    graph.on("GET", "cmp_1/insights", graph_error(message="Unsupported get request", code=100))

    with pytest.raises(MetaAPIError) as exc:
        sync.sync(draft.id, key_record)
    assert exc.value.status_code == 502


def test_save_snapshot_writes_mirror_row(sync, graph, store, key_record):
    draft = _launched(store, key_record)
    store.insert_live_campaign(
        LiveCampaign(
            meta_campaign_id="cmp_1",
            meta_adset_id="as_1",
            meta_ad_id="ad_1",
            meta_leadform_id="lf_1",
            name="Mirror",
            api_key_id=key_record.id,
        )
    )
    graph.on("GET", "cmp_1/insights", graph_ok(INSIGHTS))

    sync.save_snapshot(sync.sync(draft.id, key_record))

    row = store._fetchone("SELECT * FROM campaigns WHERE meta_campaign_id=?", ("cmp_1",))
    assert row["impressions"] == 1000
    assert row["leads_count"] == 2
    assert row["cpl_cents"] == 1000
    assert row["performance_status"] == "healthy"
    assert row["last_synced_at"] is not None


def test_save_snapshot_never_raises(sync, graph, store, key_record, monkeypatch):
    draft = _launched(store, key_record)
    report = sync.sync(draft.id, key_record)

    def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "save_performance_snapshot", boom)
    sync.save_snapshot(report)
