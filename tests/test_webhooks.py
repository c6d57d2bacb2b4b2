"""
Tests for webhook signing and delivery.
"""
import hashlib
import hmac
import json
import pytest
import httpx

from config.settings import WebhookConfig
from models.schemas import WebhookEvent, WebhookSubscription
from notifications.webhooks import (
    SIGNATURE_HEADER, WebhookDispatcher, build_payload, canonical_json, sign_payload,
    verify_signature,
)


def recording_client(statuses: list[int]):
    """httpx client that answers with the given status codes in order."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[min(len(seen), len(statuses) - 1)]
        seen.append(request)
        return httpx.Response(status, json={"ok": status < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), seen


FAST = WebhookConfig(retry_delays_s=[0, 0, 0])


# ══════════════════════════════════════════════════════════════
#  Signing
# ══════════════════════════════════════════════════════════════

class TestSigning:

    def test_canonical_json_sorted_and_compact(self):
        text = canonical_json({"b": 1, "a": {"d": 2, "c": 3}, "signature": "ignored"})
        assert text == '{"a":{"c":3,"d":2},"b":1}'

    def test_signature_round_trip(self):
        payload = build_payload(WebhookEvent.CALL_COMPLETED, "call-1", {"overallScore": 88}, "s3cret")
        assert payload["signature"].startswith("sha256=")
        assert verify_signature(payload, "s3cret", payload["signature"])
        assert not verify_signature(payload, "wrong", payload["signature"])

    def test_signature_known_answer(self):
        payload = {
            "event": "call.completed", "callId": "call-1",
            "data": {"summary": "café", "overallScore": 88},
        }
        body = '{"callId":"call-1","data":{"overallScore":88,"summary":"café"},"event":"call.completed"}'
        expected = hmac.new(b"s3cret", body.encode("utf-8"), hashlib.sha256).hexdigest()
        assert expected == "a0d1cb2c5e2f1e2b136467532a0277e5f975fcbb69f4d8199ba2fe2df1b9a79c"
        assert sign_payload(payload, "s3cret") == f"sha256={expected}"

    def test_tampering_breaks_signature(self):
        payload = build_payload(WebhookEvent.CALL_COMPLETED, "call-1", {"overallScore": 88}, "s3cret")
        payload["data"]["overallScore"] = 99
        assert not verify_signature(payload, "s3cret", payload["signature"])

    def test_unsigned_without_secret(self):
        payload = build_payload(WebhookEvent.CALL_FAILED, "call-1", {})
        assert "signature" not in payload
        assert payload["event"] == "call.failed"

    def test_signature_ignores_its_own_field(self):
        payload = {"event": "call.completed", "callId": "x"}
        signed = dict(payload, signature="sha256=whatever")
        assert sign_payload(payload, "k") == sign_payload(signed, "k")


# ══════════════════════════════════════════════════════════════
#  Delivery
# ══════════════════════════════════════════════════════════════

class TestDelivery:

    @pytest.mark.asyncio
    async def test_signed_delivery(self):
        client, seen = recording_client([200])
        dispatcher = WebhookDispatcher(FAST, client=client)
        sub = WebhookSubscription(customer_id="c1", url="https://hooks.example.com/qa", secret="k")

        assert await dispatcher.deliver(sub, WebhookEvent.CALL_COMPLETED, "call-9", {"grade": "A"})
        body = json.loads(seen[0].content)
        assert body["callId"] == "call-9"
        assert seen[0].headers[SIGNATURE_HEADER] == body["signature"]
        assert verify_signature(body, "k", seen[0].headers[SIGNATURE_HEADER])
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        client, seen = recording_client([500, 502, 200])
        dispatcher = WebhookDispatcher(FAST, client=client)
        sub = WebhookSubscription(customer_id="c1", url="https://hooks.example.com/qa")
        assert await dispatcher.deliver(sub, WebhookEvent.CALL_COMPLETED, "call-9", {})
        assert len(seen) == 3
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_three_retries(self):
        client, seen = recording_client([503])
        dispatcher = WebhookDispatcher(FAST, client=client)
        sub = WebhookSubscription(customer_id="c1", url="https://hooks.example.com/qa")
        assert await dispatcher.deliver(sub, WebhookEvent.CALL_FAILED, "call-9", {}) is False
        assert len(seen) == 4
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_send_fans_out_by_event(self):
        client, seen = recording_client([200])
        dispatcher = WebhookDispatcher(FAST, client=client)
        dispatcher.add_subscription(WebhookSubscription(customer_id="c1", url="https://a.example.com"))
        dispatcher.add_subscription(WebhookSubscription(
            customer_id="c1", url="https://b.example.com", events=[WebhookEvent.CALL_FAILED],
        ))

        results = await dispatcher.send("c1", WebhookEvent.CALL_COMPLETED, "call-1", {})
        assert results == [True]
        assert [r.url.host for r in seen] == ["a.example.com"]
        assert await dispatcher.send("nobody", WebhookEvent.CALL_COMPLETED, "call-1", {}) == []
        await dispatcher.close()

    def test_subscription_management(self):
        dispatcher = WebhookDispatcher(FAST)
        dispatcher.add_subscription(WebhookSubscription(customer_id="c1", url="https://a.example.com"))
        dispatcher.add_subscription(WebhookSubscription(customer_id="c1", url="https://a.example.com",
                                                        secret="new"))
        assert [s.secret for s in dispatcher.subscriptions("c1")] == ["new"]
        assert dispatcher.remove_subscription("c1", "https://a.example.com") is True
        assert dispatcher.remove_subscription("c1", "https://a.example.com") is False

    def test_default_subscription_from_config(self):
        dispatcher = WebhookDispatcher(WebhookConfig(default_url="https://ops.example.com/hook",
                                                     default_secret="k"))
        subs = dispatcher.subscriptions("default-customer")
        assert len(subs) == 1
        assert subs[0].secret == "k"
