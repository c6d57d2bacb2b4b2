"""
Plivo Telephony Client — Alternate carrier for simulated test calls.

Same surface as TwilioClient. Plivo answers with its own XML dialect
(<Wait> instead of <Pause>, callbackUrl on <Record>), and identifies
calls by CallUUID.

API Docs: https://www.plivo.com/docs/voice/
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional
from xml.sax.saxutils import escape, quoteattr

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from voice.providers import ProviderError, TelephonyProvider

logger = structlog.get_logger()


class PlivoClient:
    """Plivo REST API client for voice call management."""

    name = TelephonyProvider.PLIVO.value
    BASE_URL = "https://api.plivo.com/v1/Account"

    def __init__(self, auth_id: str, auth_token: str, caller_id: str, simulate: bool = False):
        self.auth_id = auth_id
        self.auth_token = auth_token
        self.caller_id = caller_id
        self.simulate = simulate
        self.base_url = f"{self.BASE_URL}/{auth_id}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.auth_id, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    def supports(self, hint: str) -> bool:
        return True

    def _require_credentials(self) -> None:
        if not self.auth_id or not self.auth_token:
            raise ProviderError("Plivo client not initialized. Check credentials.",
                                provider=self.name, provider_specific=False)

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}/"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error("plivo_api_error", status=resp.status_code, body=resp.text[:500])
            resp.raise_for_status()
        return resp.json() if resp.content else {}

    async def place_call(self, to: str, webhook_url: str, test_run_id: str = "") -> dict[str, Any]:
        if self.simulate:
            sid = f"SIM-{uuid.uuid4()}"
            logger.warning("plivo_simulated_call", to=to, test_run_id=test_run_id, sid=sid)
            return {"sid": sid, "status": "ringing", "to": to,
                    "from": self.caller_id or "+15555555555", "provider": self.name}

        self._require_credentials()
        payload = {
            "from": self.caller_id,
            "to": to,
            "answer_url": webhook_url,
            "answer_method": "POST",
            "hangup_url": webhook_url.replace("/webhook/voice", "/webhook/status"),
            "hangup_method": "POST",
            "ring_timeout": 30,
            "time_limit": 600,
        }

        logger.info("plivo_place_call", to=to, test_run_id=test_run_id)
        result = await self._request("POST", "/Call", json=payload)

        return {
            "sid": result.get("request_uuid", ""),
            "status": "queued",
            "to": to,
            "from": self.caller_id,
            "provider": self.name,
        }

    async def hangup(self, call_sid: str) -> dict[str, Any]:
        if self.simulate:
            return {"sid": call_sid, "status": "completed"}
        self._require_credentials()
        logger.info("plivo_hangup", call_uuid=call_sid)
        await self._request("DELETE", f"/Call/{call_sid}")
        return {"sid": call_sid, "status": "completed"}

    async def get_call_details(self, call_sid: str) -> dict[str, Any]:
        self._require_credentials()
        return await self._request("GET", f"/Call/{call_sid}")

    async def get_recordings(self, call_sid: str) -> list[dict[str, Any]]:
        self._require_credentials()
        result = await self._request("GET", "/Recording", params={"call_uuid": call_sid})
        return [
            {
                "sid": r.get("recording_id", ""),
                "duration": int(float(r.get("recording_duration_ms") or 0) / 1000),
                "status": "completed",
                "url": r.get("recording_url", ""),
            }
            for r in result.get("objects", [])
        ]

    async def download_recording(self, recording_url: str) -> bytes:
        client = await self._get_client()
        resp = await client.get(recording_url, follow_redirects=True)
        resp.raise_for_status()
        return resp.content

    @staticmethod
    def call_instructions(audio_url: str = "", action_url: str = "",
                          max_length: int = 10, timeout: int = 3) -> str:
        body = []
        if audio_url:
            body.append(f"<Play>{escape(audio_url)}</Play>")
            body.append(
                f"<Record action={quoteattr(action_url)} callbackUrl={quoteattr(action_url)} "
                f"maxLength=\"{max_length}\" timeout=\"{timeout}\" finishOnKey=\"#\" fileFormat=\"mp3\"/>"
            )
        else:
            body.append("<Wait length=\"1\"/>")
            if action_url:
                body.append(f"<Redirect>{escape(action_url)}</Redirect>")
        return "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response>" + "".join(body) + "</Response>"

    @staticmethod
    def parse_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """Normalize a Plivo answer/hangup/record callback."""
        STATUS_MAP = {
            "ringing": "ringing",
            "in-progress": "in-progress",
            "completed": "completed",
            "busy": "busy",
            "no-answer": "no-answer",
            "failed": "failed",
            "cancel": "canceled",
        }
        status = (payload.get("CallStatus") or payload.get("Event") or "").lower()
        recording_url = payload.get("RecordUrl") or payload.get("RecordingUrl") or ""
        return {
            "call_sid": payload.get("CallUUID") or payload.get("call_uuid") or "",
            "recording_url": recording_url,
            "recording_sid": payload.get("RecordingID") or "",
            "recording_status": "completed" if recording_url else "",
            "call_status": STATUS_MAP.get(status, status),
            "raw": payload,
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
