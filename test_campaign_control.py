import dataclasses

import pytest

from campaign_control import NOT_LAUNCHED_MESSAGE, CampaignController
from errors import Conflict, MetaAPIError, MissingToken, NotFound, ValidationFailed
from models import Business, LiveCampaign, utcnow


def _launched_draft(store, key_record, *, token=None, meta_campaign_id="cmp_1"):
    draft = store.create_draft(owner_key_id=key_record.id, business_name="Acme", meta_access_token=token)
    store.mark_draft_launched(
        draft.id,
        key_record.id,
        meta_campaign_id=meta_campaign_id,
        meta_adset_id="as_1",
        meta_ad_id="ad_1",
        meta_leadform_id="lf_1",
        launched_at=utcnow(),
    )
    return draft


@pytest.fixture
def controller(settings, store, graph):
    return CampaignController(settings, store, graph)


def test_pause_sends_status_to_meta_and_updates_draft(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record)

    out = controller.set_status(draft.id, key_record, action="pause", meta_access_token="BODY_TOKEN")

    assert out == {"campaign_id": draft.id, "status": "paused", "meta_campaign_id": "cmp_1"}
    assert graph.calls == [
        {"method": "POST", "path": "cmp_1", "token": "BODY_TOKEN", "payload": {"status": "PAUSED"}}
    ]
    assert store.get_draft(draft.id, key_record.id).status == "paused"


def test_resume_after_pause(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record, token="STORED")
    controller.set_status(draft.id, key_record, action="pause")

    out = controller.set_status(draft.id, key_record, action="resume")

    assert out["status"] == "active"
    assert graph.calls[-1]["payload"] == {"status": "ACTIVE"}
    assert store.get_draft(draft.id, key_record.id).status == "active"


def test_action_defaults_to_pause(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record, token="STORED")

    assert controller.set_status(draft.id, key_record, action=None)["status"] == "paused"


def test_unknown_action_is_rejected(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record, token="STORED")

    with pytest.raises(ValidationFailed):
        controller.set_status(draft.id, key_record, action="delete")
    assert graph.calls == []


def test_unlaunched_campaign_is_not_found(controller, graph, store, key_record):
    draft = store.create_draft(owner_key_id=key_record.id)

    with pytest.raises(NotFound) as exc:
        controller.set_status(draft.id, key_record, meta_access_token="T")

    assert exc.value.message == NOT_LAUNCHED_MESSAGE
    assert exc.value.status_code == 404
    assert graph.calls == []


def test_other_tenants_campaign_is_not_found(controller, store, key_record):
    _, other = store.create_api_key(user_id="user_2")
    draft = _launched_draft(store, other)

    with pytest.raises(NotFound):
        controller.set_status(draft.id, key_record, meta_access_token="T")


@pytest.mark.parametrize("action", ["pause", "resume"])
def test_ended_campaign_cannot_change(controller, graph, store, key_record, action):
    draft = _launched_draft(store, key_record, token="STORED")
    store.update_campaign_status("api_campaigns", draft.id, "ended")

    with pytest.raises(Conflict) as exc:
        controller.set_status(draft.id, key_record, action=action)

    assert exc.value.code == "invalid_transition"
    assert exc.value.status_code == 409
    assert graph.calls == []


def test_missing_token_everywhere(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record)

    with pytest.raises(MissingToken) as exc:
        controller.set_status(draft.id, key_record)

    assert exc.value.status_code == 400
    assert exc.value.code == "missing_token"
    assert graph.calls == []


def test_token_chain_prefers_body_then_stored_then_system(settings, store, graph, key_record):
    controller = CampaignController(dataclasses.replace(settings, system_user_token="SYSTEM"), store, graph)
    with_stored = _launched_draft(store, key_record, token="STORED", meta_campaign_id="cmp_a")
    without_stored = _launched_draft(store, key_record, meta_campaign_id="cmp_b")

    controller.set_status(with_stored.id, key_record, meta_access_token="BODY")
    controller.set_status(with_stored.id, key_record, action="resume")
    controller.set_status(without_stored.id, key_record)

    assert [c["token"] for c in graph.calls] == ["BODY", "STORED", "SYSTEM"]


def test_meta_rejection_surfaces_as_502_and_keeps_local_status(controller, graph, store, key_record):
    draft = _launched_draft(store, key_record, token="STORED")
    graph.fail("POST", "cmp_1", message="Campaign is archived", code=100)

    with pytest.raises(MetaAPIError) as exc:
        controller.set_status(draft.id, key_record)

    body = exc.value.to_body()
    assert exc.value.status_code == 502
    assert body["error"]["code"] == "meta_api_error"
    assert body["error"]["meta_error"]["message"] == "Campaign is archived"
    assert store.get_draft(draft.id, key_record.id).status == "active"


def test_legacy_live_row_is_updated_in_place(controller, graph, store, key_record):
    store.upsert_business(Business(id="biz_1", user_id=key_record.user_id, name="Acme", facebook_access_token="BIZ_TOKEN"))
    row_id = store.insert_live_campaign(
        LiveCampaign(
            meta_campaign_id="cmp_legacy",
            meta_adset_id="as_1",
            meta_ad_id="ad_1",
            meta_leadform_id="lf_1",
            name="Legacy",
            business_id="biz_1",
        )
    )

    out = controller.set_status("cmp_legacy", key_record)

    assert out["status"] == "paused"
    assert graph.calls[0]["token"] == "BIZ_TOKEN"
    assert store.find_live_campaign("cmp_legacy").status == "paused"
    assert store.resolve_campaign(row_id, key_record).status == "paused"


def test_local_write_failure_still_reports_success(controller, store, key_record, monkeypatch):
    draft = _launched_draft(store, key_record, token="STORED")

    def boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "update_campaign_status", boom)

    assert controller.set_status(draft.id, key_record)["status"] == "paused"
