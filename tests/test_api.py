"""
HTTP-level tests for the FastAPI app, driven through TestClient with the
fake provider registry.
"""
import json
import time

import pytest
from fastapi.testclient import TestClient

from api.bootstrap import build_services
from api.main import CUSTOMER_HEADER, create_app
from config.settings import RateLimitRule

AUDIO = b"ID3" + b"\x01" * 4096
CUSTOMER = {CUSTOMER_HEADER: "cust-1"}


@pytest.fixture
def client(settings, registry, store):
    svc = build_services(settings, registry=registry, store=store)
    with TestClient(create_app(svc)) as c:
        yield c


def poll(client, path: str, done, headers=None, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path, headers=headers).json()
        if done(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} did not settle: {body}")
        time.sleep(0.02)


def upload(client, data: bytes = AUDIO, name: str = "call.mp3", headers=CUSTOMER, **form):
    return client.post("/v1/calls/upload", headers=headers,
                       files={"file": (name, data, "audio/mpeg")}, data=form)


def completed(client, call_id: str) -> dict:
    return poll(client, f"/v1/calls/{call_id}",
                lambda b: b.get("status") in ("completed", "failed"), headers=CUSTOMER)


# ══════════════════════════════════════════════════════════════
#  Health
# ══════════════════════════════════════════════════════════════

class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["providers"]["stt"] == ["fake-stt"]
        assert body["providers"]["telephony"] == ["twilio"]


# ══════════════════════════════════════════════════════════════
#  Calls
# ══════════════════════════════════════════════════════════════

class TestCallEndpoints:

    def test_upload_and_evaluate(self, client):
        resp = upload(client, agentName="Mona", customFields=json.dumps({"queue": "billing"}))
        assert resp.status_code == 201
        assert resp.headers["X-RateLimit-Limit"] == "10"
        call_id = resp.json()["callId"]

        record = completed(client, call_id)
        assert record["status"] == "completed"
        assert record["metadata"]["agent_name"] == "Mona"
        assert record["metadata"]["custom_fields"] == {"queue": "billing"}

        evaluation = client.get(f"/v1/calls/{call_id}/evaluation", headers=CUSTOMER).json()
        assert evaluation["callId"] == call_id
        assert evaluation["grade"] in ("A", "B")

        transcript = client.get(f"/v1/calls/{call_id}/transcript", headers=CUSTOMER).json()
        assert transcript["language"] == "en"
        assert transcript["transcripts"][0]["speaker"] == "customer"

        audio = client.get(f"/v1/calls/{call_id}/audio", headers=CUSTOMER)
        assert audio.content == AUDIO
        assert audio.headers["content-type"] == "audio/mpeg"

    def test_exports(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)

        csv_resp = client.get(f"/v1/calls/{call_id}/export", params={"format": "csv"}, headers=CUSTOMER)
        assert csv_resp.headers["content-type"].startswith("text/csv")
        assert csv_resp.text.startswith("Field,Value")

        report = client.get(f"/v1/calls/{call_id}/export", params={"format": "pdf"}, headers=CUSTOMER)
        assert f'filename="call-{call_id}.txt"' in report.headers["content-disposition"]
        assert "Call Evaluation Report" in report.text

        bulk = client.post("/v1/calls/export-bulk", headers=CUSTOMER,
                           json={"call_ids": [call_id], "format": "json"})
        assert bulk.json()[0]["callId"] == call_id

    def test_invalid_file_is_400(self, client):
        resp = upload(client, b"plain text", "notes.txt")
        assert resp.status_code == 400
        assert "Invalid file type" in resp.json()["detail"]

    def test_invalid_custom_fields_is_400(self, client):
        resp = upload(client, customFields="[1, 2]")
        assert resp.status_code == 400

    def test_upload_rate_limited(self, settings, registry, store):
        settings.rate_limit.endpoints["upload"] = RateLimitRule(3600, 1)
        svc = build_services(settings, registry=registry, store=store)
        with TestClient(create_app(svc)) as client:
            assert upload(client).status_code == 201
            denied = upload(client, AUDIO + b"2")
            assert denied.status_code == 429
            assert int(denied.headers["Retry-After"]) > 0
            assert denied.headers["X-RateLimit-Remaining"] == "0"
            # other customers have their own window
            assert upload(client, headers={CUSTOMER_HEADER: "cust-2"}).status_code == 201

    def test_other_customer_gets_404(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)
        resp = client.get(f"/v1/calls/{call_id}", headers={CUSTOMER_HEADER: "cust-2"})
        assert resp.status_code == 404

    def test_unknown_call(self, client):
        assert client.get("/v1/calls/does-not-exist", headers=CUSTOMER).status_code == 404

    def test_list_status_and_analytics(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)

        listing = client.get("/v1/calls", headers=CUSTOMER, params={"status": "completed"}).json()
        assert listing["total"] == 1
        assert "transcripts" not in listing["calls"][0]

        statuses = client.post("/v1/calls/bulk-status", json={"call_ids": [call_id, "x"]}).json()
        assert [s["status"] for s in statuses["calls"]] == ["completed", "not_found"]

        analytics = client.get("/v1/calls/analytics", headers=CUSTOMER).json()
        assert analytics["summary"]["completedCalls"] == 1

    def test_bad_date_is_400(self, client):
        assert client.get("/v1/calls", params={"dateFrom": "yesterday"}).status_code == 400

    def test_metadata_patch_and_delete(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)

        patched = client.patch(f"/v1/calls/{call_id}/metadata", headers=CUSTOMER,
                               json={"campaign_id": "spring"}).json()
        assert patched["metadata"]["campaign_id"] == "spring"

        assert client.delete(f"/v1/calls/{call_id}").json()["deleted"] is True
        assert client.get(f"/v1/calls/{call_id}", headers=CUSTOMER).status_code == 404

    def test_retry_requires_failure(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)
        resp = client.post(f"/v1/calls/{call_id}/retry", headers=CUSTOMER)
        assert resp.status_code == 400

    def test_retry_failed_call(self, client, stt):
        from voice.providers import ProviderError
        stt.error = ProviderError("Whisper offline", provider_specific=False)
        call_id = upload(client).json()["callId"]
        assert completed(client, call_id)["error"]["type"] == "TRANSCRIPTION_FAILED"

        stt.error = None
        resp = client.post(f"/v1/calls/{call_id}/retry", headers=CUSTOMER).json()
        assert resp["retryCount"] == 1
        record = poll(client, f"/v1/calls/{call_id}", lambda b: b["status"] == "completed",
                      headers=CUSTOMER)
        assert record["retry_count"] == 1


# ══════════════════════════════════════════════════════════════
#  Operator tools
# ══════════════════════════════════════════════════════════════

class TestOperatorEndpoints:

    def test_webhook_subscriptions(self, client):
        created = client.post("/v1/webhooks", headers=CUSTOMER,
                              json={"url": "https://hooks.example.com/qa", "secret": "k"})
        assert created.status_code == 201
        assert created.json()["signed"] is True

        gone = client.delete("/v1/webhooks", headers=CUSTOMER,
                             params={"url": "https://hooks.example.com/qa"})
        assert gone.json() == {"removed": True}
        again = client.delete("/v1/webhooks", headers=CUSTOMER,
                              params={"url": "https://hooks.example.com/qa"})
        assert again.status_code == 404

    def test_cache_endpoints(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)

        stats = client.get("/v1/cache/stats").json()
        assert stats["totalEntries"] == 2        # transcript + evaluation
        cleared = client.delete("/v1/cache", params={"pattern": "^evaluation:"}).json()
        assert cleared["removed"] == 1
        assert client.delete("/v1/cache").json()["removed"] == 1

    def test_rate_limit_endpoints(self, client):
        client.get("/v1/calls", headers=CUSTOMER)
        status = client.get("/v1/rate-limit/status", headers=CUSTOMER).json()
        assert status["count"] == 1
        assert client.get("/v1/rate-limit/stats").json()["totalEntries"] >= 1
        assert client.delete("/v1/rate-limit", headers=CUSTOMER).json()["reset"] >= 1

    def test_performance_aggregate(self, client):
        call_id = upload(client).json()["callId"]
        completed(client, call_id)
        assert client.get(f"/v1/performance/calls/{call_id}").status_code == 404
        assert client.get("/v1/performance/aggregate").json()["totalCalls"] == 1


# ══════════════════════════════════════════════════════════════
#  Knowledge base
# ══════════════════════════════════════════════════════════════

class TestKnowledgeBaseEndpoints:

    def test_crud(self, client):
        created = client.post("/v1/knowledge-base", headers=CUSTOMER, json={
            "agent_id": "agent-1", "language": "en",
            "expected_jobs": [{"id": "refund", "name": "Refund", "required_steps": ["verify"]}],
        })
        assert created.status_code == 201
        assert created.json()["customer_id"] == "cust-1"

        client.post("/v1/knowledge-base/agent-1/jobs", json={"id": "upgrade", "name": "Upgrade"})
        entry = client.get("/v1/knowledge-base/agent-1").json()
        assert [j["id"] for j in entry["expected_jobs"]] == ["refund", "upgrade"]
        assert [e["agent_id"] for e in client.get("/v1/knowledge-base", headers=CUSTOMER).json()] == ["agent-1"]

        client.delete("/v1/knowledge-base/agent-1/jobs/refund")
        assert client.delete("/v1/knowledge-base/agent-1/jobs/refund").status_code == 404
        assert client.delete("/v1/knowledge-base/agent-1").json()["deleted"] is True
        assert client.get("/v1/knowledge-base/agent-1").status_code == 404

    def test_missing_agent_id_is_400(self, client):
        assert client.post("/v1/knowledge-base", json={"agent_id": ""}).status_code == 400


# ══════════════════════════════════════════════════════════════
#  Conversation runs and carrier webhooks
# ══════════════════════════════════════════════════════════════

class TestConversationEndpoints:

    def test_create_validation(self, client):
        assert client.post("/v1/test-runs", json={"agent_endpoint": ""}).status_code == 400
        resp = client.post("/v1/test-runs", json={"agent_endpoint": "+201001234567",
                                                  "language": "fr", "dialect": ""})
        assert resp.status_code == 400
        assert "Unsupported language" in resp.json()["detail"]

    def test_run_lifecycle_and_recording_webhook(self, client):
        created = client.post("/v1/test-runs", headers=CUSTOMER, json={
            "agent_endpoint": "+201001234567", "language": "en", "dialect": "us", "max_turns": 1,
        })
        assert created.status_code == 201
        run_id = created.json()["id"]

        run = poll(client, f"/v1/test-runs/{run_id}", lambda b: b["status"] == "completed")
        assert run["call"]["call_sid"] == "CA-test-0001"
        # utterance audio is released once the call is over
        audio = client.get(f"/v1/test-runs/audio/dh-{run_id}-1")
        assert audio.status_code == 404

        # action leg: no RecordingStatus, answered with instructions to come back
        action = client.post("/v1/telephony/webhook/recording", data={
            "CallSid": "CA-test-0001", "RecordingUrl": "https://api.twilio.com/rec/RE1",
        })
        assert action.headers["content-type"].startswith("application/xml")
        assert f"testRunId={run_id}" in action.text

        # the status callback for the same recording is a no-op
        status_cb = client.post("/v1/telephony/webhook/recording", data={
            "CallSid": "CA-test-0001", "RecordingUrl": "https://api.twilio.com/rec/RE1",
            "RecordingStatus": "completed",
        })
        assert status_cb.json() == {"status": "processed"}
        transcripts = client.get(f"/v1/test-runs/{run_id}").json()["transcripts"]
        assert sum(1 for t in transcripts if t["audio_url"] == "https://api.twilio.com/rec/RE1") == 1

        analytics = client.get("/v1/test-runs/analytics").json()
        assert analytics["summary"]["completedRuns"] == 1
        assert client.post(f"/v1/test-runs/{run_id}/cancel").status_code == 400

    def test_recording_webhook_ignores_incomplete(self, client):
        resp = client.post("/v1/telephony/webhook/recording", data={"CallSid": "CA1"})
        assert resp.json()["status"] == "ignored"
        pending = client.post("/v1/telephony/webhook/recording", data={
            "CallSid": "CA1", "RecordingUrl": "https://x/rec", "RecordingStatus": "in-progress",
        })
        assert pending.json()["status"] == "ignored"

    def test_voice_webhook_for_unknown_run(self, client):
        resp = client.post("/v1/telephony/webhook/voice", params={"testRunId": "nope"})
        assert resp.status_code == 200
        assert resp.text.endswith('<Response><Pause length="1"/></Response>')

    def test_status_webhook(self, client):
        resp = client.post("/v1/telephony/webhook/status", params={"testRunId": "r1"},
                           data={"CallSid": "CA1", "CallStatus": "ringing"})
        assert resp.json() == {"status": "ok"}

    def test_unknown_audio(self, client):
        assert client.get("/v1/test-runs/audio/dh-nope-1").status_code == 404

    def test_carrier_failure_hides_raw_error(self, client, telephony, monkeypatch):
        from voice.providers import ProviderError

        async def failing(call_sid):
            raise ProviderError("Twilio API 503: connection refused by edge tok=AC-secret",
                                provider="twilio")

        monkeypatch.setattr(telephony, "get_call_details", failing)
        resp = client.get("/v1/telephony/calls/CA1")
        assert resp.status_code == 502
        body = resp.json()
        assert body["type"] == "NETWORK_ERROR"
        assert body["detail"].startswith("Network error occurred")
        assert "AC-secret" not in resp.text
