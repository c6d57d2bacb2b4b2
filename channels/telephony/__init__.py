"""
Telephony carrier clients for placing simulated test calls.

Supports: Twilio (default), Plivo.
Each client provides: place_call, call_instructions, get_call_details,
get_recordings, download_recording, hangup, parse_webhook, close.

Usage:
    from channels.telephony import TelephonyFactory
    client = TelephonyFactory.create(settings.telephony)
    result = await client.place_call(to="+201001234567", webhook_url=...)
"""
from channels.telephony.twilio_client import TwilioClient
from channels.telephony.plivo_client import PlivoClient
from channels.telephony.factory import TelephonyFactory, TelephonyClient

__all__ = [
    "TwilioClient", "PlivoClient",
    "TelephonyFactory", "TelephonyClient",
]
