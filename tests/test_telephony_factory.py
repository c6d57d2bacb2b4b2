"""
Tests for TelephonyFactory, carrier call instructions and webhook
normalization.
"""
import pytest
import httpx

from channels.telephony.factory import TelephonyClient, TelephonyFactory
from channels.telephony.plivo_client import PlivoClient
from channels.telephony.twilio_client import TwilioClient
from config.settings import TelephonyConfig
from voice.providers import ProviderError, TelephonyProvider


# ══════════════════════════════════════════════════════════════
#  TelephonyFactory Tests
# ══════════════════════════════════════════════════════════════

class TestTelephonyFactory:
    """Test factory creates correct client types."""

    def test_create_twilio(self):
        config = TelephonyConfig(
            provider="twilio",
            account_sid="AC_test_sid",
            auth_token="test_token",
            phone_number="+14155551234",
        )
        client = TelephonyFactory.create(config)
        assert isinstance(client, TwilioClient)
        assert isinstance(client, TelephonyClient)
        assert client.account_sid == "AC_test_sid"
        assert client.from_number == "+14155551234"

    def test_create_plivo(self):
        config = TelephonyConfig(
            provider="plivo",
            account_sid="plivo_id",
            auth_token="plivo_token",
            phone_number="+201001234567",
            simulate_calls=True,
        )
        client = TelephonyFactory.create(config)
        assert isinstance(client, PlivoClient)
        assert client.simulate is True

    def test_create_unsupported_raises(self):
        with pytest.raises(ValueError, match="Unsupported"):
            TelephonyFactory.create(TelephonyConfig(provider="daily"))

    def test_detect_twilio_webhook(self):
        payload = {"CallSid": "CA_abc", "CallStatus": "completed"}
        assert TelephonyFactory.detect_provider_from_webhook(payload) == TelephonyProvider.TWILIO

    def test_detect_plivo_webhook(self):
        payload = {"CallUUID": "plivo_abc", "Event": "hangup"}
        assert TelephonyFactory.detect_provider_from_webhook(payload) == TelephonyProvider.PLIVO

    def test_detect_unknown_returns_none(self):
        assert TelephonyFactory.detect_provider_from_webhook({"random": "data"}) is None


# ══════════════════════════════════════════════════════════════
#  Twilio Tests
# ══════════════════════════════════════════════════════════════

class TestTwilioClient:

    def test_play_and_record_instructions(self):
        xml = TwilioClient.call_instructions(
            audio_url="https://qa.example.com/v1/test-runs/audio/dh-1-1",
            action_url="https://qa.example.com/v1/telephony/webhook/recording",
        )
        assert xml.startswith("<?xml")
        assert "<Play>https://qa.example.com/v1/test-runs/audio/dh-1-1</Play>" in xml
        assert 'maxLength="10"' in xml
        assert 'timeout="3"' in xml
        assert 'action="https://qa.example.com/v1/telephony/webhook/recording"' in xml

    def test_pause_and_redirect_without_audio(self):
        xml = TwilioClient.call_instructions(action_url="https://qa.example.com/voice?testRunId=r1&x=1")
        assert "<Pause" in xml
        assert "<Redirect>https://qa.example.com/voice?testRunId=r1&amp;x=1</Redirect>" in xml
        assert "<Record" not in xml

    def test_empty_answer(self):
        assert TwilioClient.call_instructions().endswith("<Response><Pause length=\"1\"/></Response>")

    def test_parse_recording_webhook(self):
        parsed = TwilioClient.parse_webhook({
            "CallSid": "CA123", "RecordingUrl": "https://api.twilio.com/rec/RE1",
            "RecordingSid": "RE1", "RecordingStatus": "completed",
        })
        assert parsed["call_sid"] == "CA123"
        assert parsed["recording_url"] == "https://api.twilio.com/rec/RE1"
        assert parsed["recording_status"] == "completed"

    def test_parse_action_leg_has_no_status(self):
        parsed = TwilioClient.parse_webhook({"CallSid": "CA1", "RecordingUrl": "https://x/rec"})
        assert parsed["recording_status"] == ""

    @pytest.mark.asyncio
    async def test_simulated_call(self):
        client = TwilioClient("", "", "", simulate=True)
        result = await client.place_call("+201001234567", "https://qa.example.com/voice?testRunId=r1", "r1")
        assert result["sid"].startswith("CA")
        assert result["status"] == "ringing"
        assert (await client.hangup(result["sid"]))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_place_call_without_credentials(self):
        client = TwilioClient("", "", "+14155551234")
        with pytest.raises(ProviderError, match="not initialized"):
            await client.place_call("+201001234567", "https://qa.example.com/voice")

    @pytest.mark.asyncio
    async def test_place_call_posts_form(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "CA999", "status": "queued"})

        client = TwilioClient("AC1", "token", "+14155551234")
        client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await client.place_call("+201001234567",
                                         "https://qa.example.com/v1/telephony/webhook/voice?testRunId=r1")
        assert result == {"sid": "CA999", "status": "queued", "to": "+201001234567",
                          "from": "+14155551234", "provider": "twilio"}
        form = httpx.QueryParams(seen[0].content.decode())
        assert form["StatusCallback"] == "https://qa.example.com/v1/telephony/webhook/status?testRunId=r1"
        assert seen[0].url.path.endswith("/Accounts/AC1/Calls.json")
        await client.close()

    @pytest.mark.asyncio
    async def test_download_recording_prefers_mp3(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"ID3audio")

        client = TwilioClient("AC1", "token", "+14155551234")
        client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await client.download_recording("https://api.twilio.com/rec/RE1") == b"ID3audio"
        assert seen[0].url.path.endswith("RE1.mp3")
        await client.close()


# ══════════════════════════════════════════════════════════════
#  Plivo Tests
# ══════════════════════════════════════════════════════════════

class TestPlivoClient:

    def test_instructions_use_wait(self):
        xml = PlivoClient.call_instructions(action_url="https://qa.example.com/voice")
        assert "<Wait" in xml
        assert "<Redirect>" in xml

    def test_record_instructions(self):
        xml = PlivoClient.call_instructions(audio_url="https://a/x.mp3", action_url="https://a/rec")
        assert "<Play>https://a/x.mp3</Play>" in xml
        assert 'callbackUrl="https://a/rec"' in xml

    def test_parse_record_callback(self):
        parsed = PlivoClient.parse_webhook({"CallUUID": "u-1", "RecordUrl": "https://p/rec.mp3",
                                            "CallStatus": "in-progress"})
        assert parsed["call_sid"] == "u-1"
        assert parsed["recording_url"] == "https://p/rec.mp3"
        assert parsed["recording_status"] == "completed"
        assert parsed["call_status"] == "in-progress"

    @pytest.mark.asyncio
    async def test_simulated_call(self):
        result = await PlivoClient("", "", "", simulate=True).place_call("+201001234567", "https://x")
        assert result["status"] == "ringing"
        assert result["provider"] == "plivo"
