"""
Text-to-speech backends registered under Capability.TTS.

Synthesized audio is what the simulated caller plays into a live call,
so every backend returns raw encoded bytes (mp3).
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from voice.providers import ProviderError, SUPPORTED_SPEECH_LANGUAGES, TTSProvider, base_language

logger = structlog.get_logger()


class ElevenLabsTTS:
    """ElevenLabs multilingual voices over REST."""

    name = TTSProvider.ELEVENLABS.value
    BASE_URL = "https://api.elevenlabs.io/v1"

    VOICE_SETTINGS = {
        "stability": 0.5,
        "similarity_boost": 0.75,
        "style": 0.0,
        "use_speaker_boost": True,
    }

    def __init__(self, api_key: str, voice_id: str, model_id: str = "eleven_multilingual_v2",
                 timeout_s: float = 30.0):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"xi-api-key": self.api_key, "Accept": "audio/mpeg"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    def supports(self, language: str) -> bool:
        return not language or base_language(language) in SUPPORTED_SPEECH_LANGUAGES

    @retry(stop=stop_after_attempt(2), wait=wait_exponential(min=1, max=5))
    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        resp = await client.post(url, json=body)
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    async def synthesize(self, text: str, language: str = "", voice_id: str = "") -> bytes:
        if not self.api_key:
            raise ProviderError("ElevenLabs API key not configured", provider=self.name)

        voice = voice_id or self.voice_id
        logger.info("tts_request", provider=self.name, voice_id=voice, chars=len(text))
        resp = await self._post(
            f"{self.BASE_URL}/text-to-speech/{voice}",
            {"text": text, "model_id": self.model_id, "voice_settings": self.VOICE_SETTINGS},
        )
        if resp.status_code >= 400:
            logger.error("tts_error", provider=self.name, status=resp.status_code,
                         body=resp.text[:500])
            raise ProviderError(
                f"ElevenLabs synthesis failed ({resp.status_code})",
                provider=self.name, code=resp.status_code,
            )
        return resp.content

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
