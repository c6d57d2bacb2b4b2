"""
Webhook Dispatcher — signed event notifications to customer endpoints.

Payload: {event, callId, timestamp, data, signature?}. When the
subscription has a secret, signature = "sha256=" + HMAC-SHA256 hex of
the canonical JSON of the payload without the signature field (sorted
keys, compact separators, UTF-8). The same value is sent in the
X-Webhook-Signature header.

Delivery never fails the caller: each target is retried after 1s, 2s
and 4s, then the event is logged and dropped. There is no durable
delivery queue.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_chain, wait_fixed

from config.settings import WebhookConfig
from models.schemas import WebhookEvent, WebhookSubscription

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "VoiceQA-Webhook/1.0"


def canonical_json(payload: dict[str, Any]) -> str:
    body = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    digest = hmac.new(secret.encode(), canonical_json(payload).encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: dict[str, Any], secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(payload, secret), signature or "")


def build_payload(event: WebhookEvent, call_id: str, data: dict[str, Any],
                  secret: str = "") -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event.value,
        "callId": call_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    if secret:
        payload["signature"] = sign_payload(payload, secret)
    return payload


class WebhookDispatcher:

    def __init__(self, config: WebhookConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or WebhookConfig()
        self._client = client
        self._subscriptions: dict[str, list[WebhookSubscription]] = {}
        self._pending: set[asyncio.Task] = set()
        if self.config.default_url:
            self.add_subscription(WebhookSubscription(
                customer_id=self.config.default_customer,
                url=self.config.default_url,
                secret=self.config.default_secret,
            ))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_s, connect=5.0),
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    # ── Subscriptions ─────────────────────────────────────────

    def add_subscription(self, subscription: WebhookSubscription) -> None:
        subs = self._subscriptions.setdefault(subscription.customer_id, [])
        subs[:] = [s for s in subs if s.url != subscription.url]
        subs.append(subscription)
        logger.info("webhook_subscription_added", customer_id=subscription.customer_id,
                    url=subscription.url)

    def remove_subscription(self, customer_id: str, url: str) -> bool:
        subs = self._subscriptions.get(customer_id, [])
        kept = [s for s in subs if s.url != url]
        self._subscriptions[customer_id] = kept
        removed = len(kept) < len(subs)
        logger.info("webhook_subscription_removed", customer_id=customer_id, url=url, removed=removed)
        return removed

    def subscriptions(self, customer_id: str) -> list[WebhookSubscription]:
        return list(self._subscriptions.get(customer_id, []))

    # ── Delivery ──────────────────────────────────────────────

    async def deliver(self, subscription: WebhookSubscription, event: WebhookEvent,
                      call_id: str, data: dict[str, Any]) -> bool:
        """POST one event with retries. Returns False once retries are exhausted."""
        payload = build_payload(event, call_id, data, subscription.secret)
        body = json.dumps(payload, ensure_ascii=False, default=str)
        headers = {"Content-Type": "application/json"}
        if "signature" in payload:
            headers[SIGNATURE_HEADER] = payload["signature"]

        delays = list(self.config.retry_delays_s)
        client = await self._get_client()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(len(delays) + 1),
                wait=wait_chain(*[wait_fixed(d) for d in delays]) if delays else wait_fixed(0),
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info("webhook_retry", url=subscription.url, attempt=number)
                    resp = await client.post(subscription.url, content=body.encode(), headers=headers)
                    resp.raise_for_status()
        except RetryError as e:
            logger.error("webhook_delivery_dropped", url=subscription.url, event=event.value,
                         call_id=call_id, error=str(e.last_attempt.exception()))
            return False

        logger.info("webhook_delivered", url=subscription.url, event=event.value, call_id=call_id)
        return True

    async def send(self, customer_id: str, event: WebhookEvent, call_id: str,
                   data: dict[str, Any]) -> list[bool]:
        """Fan out to every subscription of the customer that wants this event."""
        targets = [s for s in self._subscriptions.get(customer_id, []) if event in s.events]
        if not targets:
            logger.debug("webhook_no_subscribers", customer_id=customer_id, event=event.value)
            return []
        results = await asyncio.gather(
            *(self.deliver(s, event, call_id, data) for s in targets),
            return_exceptions=True,
        )
        for sub, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error("webhook_delivery_error", url=sub.url, error=str(result))
        return [r is True for r in results]

    def notify(self, customer_id: str, event: WebhookEvent, call_id: str,
               data: dict[str, Any]) -> asyncio.Task:
        """Fire and forget; the caller never waits on delivery."""
        task = asyncio.create_task(self.send(customer_id, event, call_id, data),
                                   name=f"webhook_{event.value}_{call_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
