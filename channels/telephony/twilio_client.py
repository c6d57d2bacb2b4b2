"""
Twilio Telephony Client — Default carrier for simulated test calls.

Call flow for a conversation run:
1. place_call() → Twilio dials the agent under test; its voice URL points
   back at /v1/telephony/webhook/voice?testRunId=...
2. The voice webhook answers with call_instructions(): play the current
   synthesized utterance, then record the agent's reply
3. Twilio posts the finished recording to /v1/telephony/webhook/recording
4. hangup() ends the call once the dialogue is over

With simulate=True no request leaves the process: place_call returns a
fabricated SID and no webhooks will ever arrive.

API Docs: https://www.twilio.com/docs/voice/api
"""
from __future__ import annotations

import time
import uuid
import structlog
from typing import Any, Optional
from urllib.parse import urlsplit
from xml.sax.saxutils import escape, quoteattr

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from voice.providers import ProviderError, TelephonyProvider

logger = structlog.get_logger()


class TwilioClient:
    """Twilio REST API client for voice call management."""

    name = TelephonyProvider.TWILIO.value
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 simulate: bool = False):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.simulate = simulate
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    def supports(self, hint: str) -> bool:
        return True

    def _require_credentials(self) -> None:
        if not self.account_sid or not self.auth_token:
            raise ProviderError("Twilio client not initialized. Check credentials.",
                                provider=self.name, provider_specific=False)

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json()

    # ── Call Management ─────────────────────────────────────

    async def place_call(self, to: str, webhook_url: str, test_run_id: str = "") -> dict[str, Any]:
        """
        Dial the agent under test.

        Args:
            to: Destination phone number (E.164)
            webhook_url: Voice URL Twilio fetches call instructions from
            test_run_id: Conversation run this call belongs to (logging only)
        """
        if self.simulate:
            sid = f"CA{int(time.time() * 1000)}{uuid.uuid4().hex[:9]}"
            logger.warning("twilio_simulated_call", to=to, test_run_id=test_run_id, sid=sid)
            return {"sid": sid, "status": "ringing", "to": to,
                    "from": self.from_number or "+15555555555", "provider": self.name}

        self._require_credentials()
        if not self.from_number:
            raise ProviderError("Twilio phone number not configured",
                                provider=self.name, provider_specific=False)

        # status callbacks go to the sibling route, keeping the query string
        parts = urlsplit(webhook_url)
        status_callback = f"{parts.scheme}://{parts.netloc}/v1/telephony/webhook/status"
        if parts.query:
            status_callback += f"?{parts.query}"

        # Twilio uses form-encoded POST, not JSON
        payload = {
            "From": self.from_number,
            "To": to,
            "Url": webhook_url,
            "StatusCallback": status_callback,
            "StatusCallbackEvent": "initiated ringing answered completed",
            "StatusCallbackMethod": "POST",
            "Record": "false",
        }

        logger.info("twilio_place_call", to=to, test_run_id=test_run_id)
        result = await self._request("POST", "/Calls", data=payload)

        return {
            "sid": result.get("sid", ""),
            "status": result.get("status", "queued"),
            "to": result.get("to", to),
            "from": result.get("from", self.from_number),
            "provider": self.name,
        }

    async def hangup(self, call_sid: str) -> dict[str, Any]:
        """Terminate an active call."""
        if self.simulate:
            return {"sid": call_sid, "status": "completed"}
        self._require_credentials()
        logger.info("twilio_hangup", call_sid=call_sid)
        await self._request("POST", f"/Calls/{call_sid}", data={"Status": "completed"})
        return {"sid": call_sid, "status": "completed"}

    async def get_call_details(self, call_sid: str) -> dict[str, Any]:
        """Fetch current call state from Twilio."""
        self._require_credentials()
        return await self._request("GET", f"/Calls/{call_sid}")

    async def get_recordings(self, call_sid: str) -> list[dict[str, Any]]:
        self._require_credentials()
        result = await self._request("GET", f"/Calls/{call_sid}/Recordings")
        return [
            {
                "sid": r.get("sid", ""),
                "duration": int(r.get("duration") or 0),
                "status": r.get("status", ""),
                "url": f"{self.base_url}/Recordings/{r.get('sid', '')}.mp3",
            }
            for r in result.get("recordings", [])
        ]

    async def download_recording(self, recording_url: str) -> bytes:
        """Recording URLs need account auth; the bare URL serves WAV, .mp3 is smaller."""
        url = recording_url if recording_url.endswith((".mp3", ".wav")) else f"{recording_url}.mp3"
        client = await self._get_client()
        resp = await client.get(url, follow_redirects=True)
        resp.raise_for_status()
        return resp.content

    # ── Call Instructions ───────────────────────────────────

    @staticmethod
    def call_instructions(audio_url: str = "", action_url: str = "",
                          max_length: int = 10, timeout: int = 3) -> str:
        """
        TwiML for one turn: play the utterance and record the reply.
        Without audio, pause and redirect back so Twilio asks again.
        """
        body = []
        if audio_url:
            body.append(f"<Play>{escape(audio_url)}</Play>")
            body.append(
                f"<Record maxLength=\"{max_length}\" timeout=\"{timeout}\" "
                f"action={quoteattr(action_url)} recordingStatusCallback={quoteattr(action_url)} "
                f"finishOnKey=\"#\"/>"
            )
        else:
            body.append("<Pause length=\"1\"/>")
            if action_url:
                body.append(f"<Redirect>{escape(action_url)}</Redirect>")
        return "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response>" + "".join(body) + "</Response>"

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """Normalize a Twilio voice/status/recording callback."""
        return {
            "call_sid": payload.get("CallSid") or payload.get("callSid") or "",
            "recording_url": payload.get("RecordingUrl") or payload.get("recordingUrl") or payload.get("url") or "",
            "recording_sid": payload.get("RecordingSid") or payload.get("recordingSid") or payload.get("sid") or "",
            "recording_status": (payload.get("RecordingStatus") or payload.get("status") or "").lower(),
            "call_status": (payload.get("CallStatus") or payload.get("callStatus") or "").lower(),
            "raw": payload,
        }

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
