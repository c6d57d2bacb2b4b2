"""
Telephony Provider Factory — instantiates the configured carrier client.

The factory normalizes all carrier APIs into a common interface:
  - place_call(to, webhook_url, test_run_id) → {sid, status, to, from, provider}
  - call_instructions(audio_url, action_url) → XML answer document
  - get_call_details(sid) / get_recordings(sid) / download_recording(url)
  - hangup(sid) → {sid, status}
  - parse_webhook(payload) → normalized dict
  - close() → clean up HTTP clients

Twilio is the default provider.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Protocol, runtime_checkable

from config.settings import TelephonyConfig
from voice.providers import TelephonyProvider

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  PROTOCOL — Common interface all carriers implement
# ══════════════════════════════════════════════════════════════

@runtime_checkable
class TelephonyClient(Protocol):
    """
    Common interface for all telephony carriers.

    Each client (TwilioClient, PlivoClient) implements these methods with
    carrier-specific API calls, but returns normalized dicts so the caller
    doesn't need to know which carrier is active.
    """

    name: str

    def supports(self, hint: str) -> bool:
        ...

    async def place_call(self, to: str, webhook_url: str, test_run_id: str = "") -> dict[str, Any]:
        """
        Place an outbound call.

        Returns:
            {"sid": "...", "status": "queued", "to": "...", "from": "...", "provider": "..."}
        """
        ...

    @staticmethod
    def call_instructions(audio_url: str = "", action_url: str = "",
                          max_length: int = 10, timeout: int = 3) -> str:
        ...

    async def get_call_details(self, call_sid: str) -> dict[str, Any]:
        ...

    async def get_recordings(self, call_sid: str) -> list[dict[str, Any]]:
        ...

    async def download_recording(self, recording_url: str) -> bytes:
        ...

    async def hangup(self, call_sid: str) -> dict[str, Any]:
        ...

    @staticmethod
    def parse_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a carrier callback.

        Returns:
            {
                "call_sid": str,
                "recording_url": str,
                "recording_sid": str,
                "recording_status": str,
                "call_status": str,
                "raw": dict,
            }
        """
        ...

    async def close(self) -> None:
        ...


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

class TelephonyFactory:
    """
    Creates a telephony client from TelephonyConfig.

    Usage:
        client = TelephonyFactory.create(settings.telephony)
        result = await client.place_call(...)
    """

    @staticmethod
    def create(config: TelephonyConfig) -> TelephonyClient:
        """
        Raises:
            ValueError: If the provider is not supported.
        """
        provider = str(config.provider).lower()

        if provider == TelephonyProvider.TWILIO.value:
            from channels.telephony.twilio_client import TwilioClient
            client = TwilioClient(
                account_sid=config.account_sid,
                auth_token=config.auth_token,
                from_number=config.phone_number,
                simulate=config.simulate_calls,
            )
        elif provider == TelephonyProvider.PLIVO.value:
            from channels.telephony.plivo_client import PlivoClient
            client = PlivoClient(
                auth_id=config.account_sid,
                auth_token=config.auth_token,
                caller_id=config.phone_number,
                simulate=config.simulate_calls,
            )
        else:
            raise ValueError(
                f"Unsupported telephony provider: {config.provider}. "
                f"Supported: {', '.join(p.value for p in TelephonyProvider)}"
            )

        logger.info("telephony_client_created", provider=provider, simulate=config.simulate_calls)
        return client

    @staticmethod
    def detect_provider_from_webhook(payload: dict[str, Any]) -> Optional[TelephonyProvider]:
        """
        Twilio:  has CallSid
        Plivo:   has CallUUID

        Returns None if format is unrecognized.
        """
        if "CallUUID" in payload:
            return TelephonyProvider.PLIVO
        if "CallSid" in payload or "callSid" in payload:
            return TelephonyProvider.TWILIO
        return None
