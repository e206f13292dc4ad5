"""
API tests — FastAPI TestClient against an orchestrator with an in-memory
store and a scripted transport.
"""
import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from channels.base import PermanentDeliveryError
from config.settings import BotConfig, Settings
from core.orchestrator import Orchestrator
from database.store_memory import InMemoryStore

DEVICE = "device-1"


@pytest.fixture
def orchestrator(transport, dispatch_config):
    settings = Settings(dispatch=dispatch_config, bot=BotConfig(reply_backoff_seconds=0.001))
    return Orchestrator(InMemoryStore(), transport, settings)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as client:
        yield client


def _wait_for_status(client, job_id, statuses=("completed", "failed", "cancelled"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/v1/jobs/{job_id}").json()
        if job["status"] in statuses:
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} still {job['status']}")
        time.sleep(0.02)


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["workers_running"] is True
        assert body["event_relay"] is False


class TestJobs:

    def test_job_lifecycle(self, client, transport):
        transport.script["15551230002"] = [PermanentDeliveryError("not on WhatsApp")]

        resp = client.post("/api/v1/jobs", json={
            "device_id": DEVICE,
            "recipients": ["+1 555 123 0001", "15551230002"],
            "payload": {"text": "Sale today"},
        })
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]

        job = _wait_for_status(client, job_id)
        assert job["status"] == "completed"
        assert job["progress"]["completed"] == 1
        assert job["progress"]["failed"] == 1

        failed = client.get(f"/api/v1/jobs/{job_id}/items", params={"status": "failed"}).json()
        assert [i["recipient"] for i in failed] == ["15551230002"]

        listed = client.get("/api/v1/jobs", params={"device_id": DEVICE}).json()
        assert [j["id"] for j in listed] == [job_id]
        stats = client.get("/api/v1/jobs/stats").json()
        assert stats["total_jobs"] == 1

    def test_invalid_recipients(self, client):
        resp = client.post("/api/v1/jobs", json={
            "device_id": DEVICE, "recipients": ["15551230001", "not-a-number"], "payload": {"text": "hi"},
        })
        assert resp.status_code == 422
        assert len(resp.json()["errors"]) == 1

    def test_missing_payload_field(self, client):
        resp = client.post("/api/v1/jobs", json={"device_id": DEVICE, "recipients": ["15551230001"]})
        assert resp.status_code == 422

    def test_unknown_job(self, client):
        assert client.get("/api/v1/jobs/nope").status_code == 404
        assert client.get("/api/v1/jobs/nope/items").status_code == 404
        assert client.post("/api/v1/jobs/nope/cancel").status_code == 404

    def test_cancel_finished_job_conflicts(self, client):
        job_id = client.post("/api/v1/jobs", json={
            "device_id": DEVICE, "recipients": ["15551230001"], "payload": {"text": "hi"},
        }).json()["job_id"]
        _wait_for_status(client, job_id)

        assert client.post(f"/api/v1/jobs/{job_id}/cancel").status_code == 409

    def test_retry_failed_recipients(self, client, transport):
        transport.script["15551230002"] = [PermanentDeliveryError("blocked")]
        job_id = client.post("/api/v1/jobs", json={
            "device_id": DEVICE, "recipients": ["15551230001", "15551230002"], "payload": {"text": "hi"},
        }).json()["job_id"]
        _wait_for_status(client, job_id)

        resp = client.post(f"/api/v1/jobs/{job_id}/retry")
        assert resp.status_code == 202
        retry_id = resp.json()["job_id"]
        job = _wait_for_status(client, retry_id)
        assert job["progress"]["total"] == 1
        assert job["progress"]["completed"] == 1


class TestRules:

    def test_rule_crud(self, client):
        resp = client.post(f"/api/v1/devices/{DEVICE}/rules", json={
            "name": "hi", "match_type": "exact", "trigger": "hi", "response": "Hello!", "priority": 1,
        })
        assert resp.status_code == 201
        rule_id = resp.json()["id"]

        resp = client.patch(f"/api/v1/rules/{rule_id}", json={"response": "Hey!"})
        assert resp.json()["response"] == "Hey!"
        assert resp.json()["trigger"] == "hi"

        assert [r["id"] for r in client.get(f"/api/v1/devices/{DEVICE}/rules").json()] == [rule_id]
        assert client.delete(f"/api/v1/rules/{rule_id}").status_code == 204
        assert client.get(f"/api/v1/rules/{rule_id}").status_code == 404

    def test_dangerous_regex_rejected(self, client):
        resp = client.post(f"/api/v1/devices/{DEVICE}/rules", json={
            "name": "bad", "match_type": "regex", "trigger": "(a+)+$", "response": "x",
        })
        assert resp.status_code == 422

    def test_unknown_match_type_rejected(self, client):
        resp = client.post(f"/api/v1/devices/{DEVICE}/rules", json={
            "name": "bad", "match_type": "fuzzy", "trigger": "x", "response": "x",
        })
        assert resp.status_code == 422


class TestConversations:

    def test_inbound_reply_and_handoff(self, client, transport):
        client.post(f"/api/v1/devices/{DEVICE}/rules", json={
            "name": "hi", "match_type": "exact", "trigger": "hi", "response": "Hello!",
        })

        action = client.post(f"/api/v1/devices/{DEVICE}/inbound", json={"sender_id": "15551230001", "text": "hi"}).json()
        assert action["type"] == "auto_reply"
        assert transport.sent[-1][2] == {"text": "Hello!"}

        conv = client.post(f"/api/v1/devices/{DEVICE}/conversations/15551230001/handoff",
                           json={"reason": "complaint"}).json()
        assert conv["state"] == "handoff"
        assert [c["counterpart_id"] for c in client.get(f"/api/v1/devices/{DEVICE}/handoffs").json()] == ["15551230001"]

        action = client.post(f"/api/v1/devices/{DEVICE}/inbound", json={"sender_id": "15551230001", "text": "hi"}).json()
        assert action["reason"] == "in_handoff"

        conv = client.post(f"/api/v1/devices/{DEVICE}/conversations/15551230001/resume").json()
        assert conv["state"] == "bot"
        stats = client.get(f"/api/v1/devices/{DEVICE}/conversations/stats").json()
        assert stats == {"total": 1, "bot": 1, "handoff": 0}

        actions = client.get(f"/api/v1/devices/{DEVICE}/actions", params={"counterpart_id": "15551230001"}).json()
        assert {a["action_type"] for a in actions} >= {"auto_reply", "handoff_initiated", "handoff_resumed"}

    def test_unknown_conversation(self, client):
        assert client.get(f"/api/v1/devices/{DEVICE}/conversations/15550000000").status_code == 404

    def test_bot_config_round_trip(self, client):
        resp = client.put(f"/api/v1/devices/{DEVICE}/bot-config", json={
            "handoff_keywords": ["agent"],
            "business_hours": [{"day": 1, "start": "09:00", "end": "17:00"}],
            "off_hours_enabled": True,
        })
        assert resp.status_code == 200
        config = client.get(f"/api/v1/devices/{DEVICE}/bot-config").json()
        assert config["handoff_keywords"] == ["agent"]
        assert config["off_hours_enabled"] is True

    def test_bot_config_update_keeps_unsent_fields(self, client):
        client.put(f"/api/v1/devices/{DEVICE}/bot-config", json={
            "handoff_keywords": ["agent"], "timezone": "Asia/Kolkata",
        })

        resp = client.put(f"/api/v1/devices/{DEVICE}/bot-config", json={"bot_enabled": False})

        assert resp.status_code == 200
        config = client.get(f"/api/v1/devices/{DEVICE}/bot-config").json()
        assert config["bot_enabled"] is False
        assert config["handoff_keywords"] == ["agent"]
        assert config["timezone"] == "Asia/Kolkata"

    def test_invalid_business_hours(self, client):
        resp = client.put(f"/api/v1/devices/{DEVICE}/bot-config", json={
            "business_hours": [{"day": 8, "start": "09:00", "end": "17:00"}],
        })
        assert resp.status_code == 422
        assert resp.json()["errors"]


class TestWebhooks:

    def test_verification(self, client, transport):
        transport.verify_webhook = lambda params: params.get("hub.challenge") if params.get("hub.verify_token") == "t" else None

        ok = client.get(f"/webhooks/whatsapp/{DEVICE}",
                        params={"hub.mode": "subscribe", "hub.verify_token": "t", "hub.challenge": "42"})
        assert ok.status_code == 200
        assert ok.text == "42"

        denied = client.get(f"/webhooks/whatsapp/{DEVICE}", params={"hub.verify_token": "wrong"})
        assert denied.status_code == 403

    def test_webhook_without_parser_is_a_server_error(self, client):
        resp = client.post(f"/webhooks/whatsapp/{DEVICE}", json={"entry": []})
        assert resp.status_code == 500

    def test_invalid_json_body(self, client):
        resp = client.post(f"/webhooks/whatsapp/{DEVICE}", content=b"not json",
                           headers={"content-type": "application/json"})
        assert resp.status_code == 400
