"""
Tests for the Whop webhook routes (Flask endpoints).
These tests verify signature handling, hub resolution and idempotent mapping
through the HTTP layer.
"""
import json
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from everly.config import TestingConfig
from everly.models import ActivityLog, Member, SystemLog
from everly.services.metrics_service import get_metric
from everly.whop.signature import compute_signature


def post_event(client, event, secret=TestingConfig.WHOP_WEBHOOK_SECRET, headers=None, raw=None):
    body = raw if raw is not None else json.dumps(event).encode("utf-8")
    all_headers = {"x-whop-signature": compute_signature(body, secret)}
    all_headers.update(headers or {})
    return client.post("/webhooks/whop", data=body, headers=all_headers, content_type="application/json")


MEMBER_EVENT = {
    "id": "evt_1",
    "type": "member.created",
    "data": {"id": "mem_1", "company_id": "biz_hub_1"},
}


class TestWebhookHealth:

    def test_get(self, client):
        response = client.get("/webhooks/whop")
        assert response.status_code == 200
        assert response.get_json() == {"ok": True}

    def test_healthz(self, client):
        assert client.get("/healthz").status_code == 200


class TestWebhookSignature:
    """Signature verification happens before anything else."""

    def test_bad_signature(self, client):
        response = post_event(client, MEMBER_EVENT, secret="wrong-secret")

        assert response.status_code == 400
        assert response.get_json() == {"error": "bad_signature", "reason": "mismatch"}
        assert Member.query.count() == 0

    def test_missing_signature(self, client):
        response = client.post("/webhooks/whop", data=json.dumps(MEMBER_EVENT), content_type="application/json")

        assert response.status_code == 400
        assert response.get_json()["reason"] == "missing-signature"

    def test_fallback_header_name(self, client):
        body = json.dumps(MEMBER_EVENT).encode("utf-8")
        response = client.post(
            "/webhooks/whop",
            data=body,
            headers={"whop-signature": compute_signature(body, TestingConfig.WHOP_WEBHOOK_SECRET)},
            content_type="application/json",
        )
        assert response.status_code == 200

    def test_no_secret_configured_accepts_unsigned(self, app, client):
        app.config["WHOP_WEBHOOK_SECRET"] = None
        response = client.post("/webhooks/whop", data=json.dumps(MEMBER_EVENT), content_type="application/json")

        assert response.status_code == 200
        assert Member.query.count() == 1


class TestWebhookMapping:
    """Tests for POST /webhooks/whop after verification."""

    def test_member_created(self, client):
        response = post_event(client, MEMBER_EVENT)

        assert response.status_code == 200
        assert response.get_json() == {"ok": True, "outcome": "applied"}
        member = Member.query.one()
        assert member.hub_id == "biz_hub_1"
        assert member.whop_member_id == "mem_1"

    def test_same_event_twice_yields_one_member(self, client):
        post_event(client, MEMBER_EVENT)
        response = post_event(client, MEMBER_EVENT)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "duplicate"
        assert Member.query.count() == 1

    def test_hub_from_header(self, client):
        event = {"id": "evt_2", "type": "message.created", "data": {"channel_id": "c"}}
        response = post_event(client, event, headers={"x-everly-hub-id": "hub_from_header"})

        assert response.status_code == 200
        assert ActivityLog.query.one().hub_id == "hub_from_header"

    def test_hub_from_demo_config(self, app, client):
        app.config["DEMO_HUB_ID"] = "demo_hub"
        event = {"id": "evt_3", "type": "message.created", "data": {}}

        assert post_event(client, event).status_code == 200
        assert ActivityLog.query.one().hub_id == "demo_hub"

    def test_missing_hub(self, client):
        event = {"id": "evt_4", "type": "message.created", "data": {}}
        response = post_event(client, event)

        assert response.status_code == 400
        assert response.get_json() == {"error": "missing_hub"}

    def test_unknown_event_type_is_acknowledged(self, client):
        event = {"id": "evt_5", "type": "membership.went_valid", "data": {"company_id": "hub_1"}}
        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "ignored"

    def test_unparseable_body_is_acknowledged(self, client):
        response = post_event(client, None, raw=b"{not json")

        assert response.status_code == 200
        assert response.get_json() == {"ok": True, "outcome": "unparseable"}

    def test_non_object_body_is_acknowledged(self, client):
        response = post_event(client, None, raw=b"[1, 2, 3]")
        assert response.get_json()["outcome"] == "unparseable"

    def test_records_last_webhook_metric(self, client):
        post_event(client, MEMBER_EVENT)

        metric = get_metric("last_webhook_at")
        assert metric["source"] == "whop"
        assert metric["type"] == "member.created"
        assert metric["outcome"] == "applied"

    @patch("everly.whop.map_whop_event")
    def test_mapping_error_still_returns_200(self, mock_map, client):
        mock_map.side_effect = OperationalError("INSERT INTO members ...", {}, Exception("database is locked"))

        response = post_event(client, MEMBER_EVENT)

        assert response.status_code == 200
        assert response.get_json() == {"ok": True, "outcome": "error"}

        entry = SystemLog.query.one()
        assert entry.category == "webhook"
        assert entry.operation == "map_whop_event"
        assert entry.level == "ERROR"
        assert entry.context["whop_event_id"] == "evt_1"
        assert entry.context["error_type"] == "OperationalError"
        assert get_metric("last_webhook_at")["outcome"] == "error"


class TestWebhookPayloadShapes:
    """Signed events with unexpected field shapes are acknowledged, never 5xx."""

    def test_tier_as_string(self, client):
        event = {"id": "evt_t", "type": "member.created", "data": {"id": "m1", "tier": "gold", "company_id": "hub_1"}}
        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "applied"
        assert Member.query.one().role == "member"

    def test_user_as_string(self, client):
        event = {"id": "evt_u", "type": "message.created", "data": {"user": "u_1", "company_id": "hub_1"}}
        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "applied"
        assert ActivityLog.query.one().meta["whop_member_id"] is None

    def test_millisecond_epoch_created_at(self, client):
        event = {
            "id": "evt_ms",
            "type": "member.created",
            "created_at": 1725000000000,
            "data": {"id": "m1", "company_id": "hub_1"},
        }
        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "applied"
        assert Member.query.one().last_active_at.year >= 2025

    def test_data_as_list(self, client):
        event = {"id": "evt_l", "type": "payment.succeeded", "company_id": "hub_1", "data": ["x"]}
        response = post_event(client, event)

        assert response.status_code == 200
        assert ActivityLog.query.one().meta["amount_cents"] is None

    def test_type_as_list_is_ignored(self, client):
        event = {"id": "evt_tl", "type": ["member.created"], "company_id": "hub_1"}
        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json()["outcome"] == "ignored"

    @patch("everly.whop.map_whop_event")
    def test_non_database_error_still_returns_200(self, mock_map, client):
        mock_map.side_effect = AttributeError("'str' object has no attribute 'get'")

        response = post_event(client, MEMBER_EVENT)

        assert response.status_code == 200
        assert response.get_json() == {"ok": True, "outcome": "error"}
        entry = SystemLog.query.one()
        assert entry.context["error_type"] == "AttributeError"
        assert entry.context["hub_id"] == "biz_hub_1"
