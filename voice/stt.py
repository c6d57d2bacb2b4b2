"""
Speech-to-text backends registered under Capability.STT.

  - CloudflareWhisperSTT: Workers AI whisper; primary. Rejects large
    payloads with error code 3006, which sends the registry to the next
    backend.
  - HuggingFaceSTT: Inference API; fallback. Picks its own model per
    language, so a Workers AI model hint is dropped before it is called.
  - OpenAIWhisperSTT: OpenAI audio transcription API via the openai SDK.

All return a TranscriptionResult. Auto-detect is requested with
language="auto".
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from voice.providers import (
    ProviderError, SIZE_LIMIT_CODE, STTProvider, SUPPORTED_SPEECH_LANGUAGES, base_language,
    from_sdk_error,
)

logger = structlog.get_logger()


@dataclass
class TranscriptionResult:
    text: str
    confidence: float = 0.9
    language: str = ""
    duration: Optional[float] = None       # seconds, when the backend reports it
    provider: str = ""


def _supports_language(language: str) -> bool:
    return language == "auto" or base_language(language) in SUPPORTED_SPEECH_LANGUAGES


def _cloudflare_error_code(resp: httpx.Response) -> Any:
    try:
        errors = resp.json().get("errors") or []
        return errors[0].get("code") if errors else None
    except Exception:
        return None


# ══════════════════════════════════════════════════════════════
#  CLOUDFLARE WORKERS AI
# ══════════════════════════════════════════════════════════════

class CloudflareWhisperSTT:
    """Cloudflare Workers AI whisper over REST."""

    name = STTProvider.CLOUDFLARE.value
    DEFAULT_MODEL = "@cf/openai/whisper"
    # size cap, bad input, internal error: another backend may cope
    PROVIDER_SPECIFIC_CODES = {SIZE_LIMIT_CODE, 5006, 6001}

    def __init__(self, account_id: str, api_token: str, timeout_s: float = 300.0):
        self.account_id = account_id
        self.api_token = api_token
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run"
        self.timeout_s = timeout_s
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    def supports(self, language: str) -> bool:
        return _supports_language(language)

    def adapt_params(self, params: dict[str, Any]) -> dict[str, Any]:
        model = params.get("model") or ""
        if model and not model.startswith("@cf/"):
            params.pop("model")
        return params

    async def transcribe(self, audio: bytes, language: str = "auto", model: str = "",
                         prompt: str = "", mime_type: str = "") -> TranscriptionResult:
        if not self.account_id or not self.api_token:
            raise ProviderError("Cloudflare credentials not configured", provider=self.name)

        model = model or self.DEFAULT_MODEL
        body: dict[str, Any] = {"audio": list(audio)}
        if language != "auto":
            body["language"] = base_language(language)
        if prompt:
            body["prompt"] = prompt

        logger.info("cloudflare_stt_request", model=model, bytes=len(audio), language=language)
        client = await self._get_client()
        resp = await client.post(f"{self.base_url}/{model}", json=body)
        if resp.status_code >= 400:
            code = _cloudflare_error_code(resp)
            logger.error("cloudflare_stt_error", status=resp.status_code, code=code,
                         body=resp.text[:500])
            raise ProviderError(
                f"Cloudflare whisper request failed ({resp.status_code}, code {code})",
                provider=self.name,
                code=code,
                provider_specific=(
                    code in self.PROVIDER_SPECIFIC_CODES
                    or resp.status_code in (401, 403, 413, 429)
                    or resp.status_code >= 500
                ),
                details={"status": resp.status_code, "code": code},
            )

        data = resp.json()
        result = data.get("result") or data
        text = result.get("text") or result.get("transcription") or result.get("transcript") or ""
        detected = result.get("language") or result.get("detected_language") or (
            language if language != "auto" else ""
        )
        return TranscriptionResult(
            text=text.strip(),
            confidence=float(result.get("confidence") or 0.9),
            language=detected,
            duration=result.get("duration"),
            provider=self.name,
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  HUGGING FACE INFERENCE
# ══════════════════════════════════════════════════════════════

class HuggingFaceSTT:
    """Hugging Face Inference API; raw audio in, {"text": ...} out."""

    name = STTProvider.HUGGINGFACE.value
    BASE_URL = "https://api-inference.huggingface.co/models"

    MODELS_BY_LANGUAGE = {
        "ar": ["facebook/wav2vec2-large-xlsr-53-arabic",
               "jonatasgrosman/wav2vec2-large-xlsr-53-arabic"],
    }
    DEFAULT_MODELS = ["openai/whisper-large-v3", "openai/whisper-base", "openai/whisper-medium"]

    def __init__(self, api_key: str, base_url: str = "", timeout_s: float = 300.0,
                 default_model: str = ""):
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout_s = timeout_s
        self.default_model = default_model
        self._client: Optional[httpx.AsyncClient] = None

    def models_for(self, language: str) -> list[str]:
        """Models tried in order when the caller names none."""
        by_language = self.MODELS_BY_LANGUAGE.get(base_language(language))
        if by_language:
            return list(by_language)
        models = [self.default_model] if self.default_model else []
        return models + [m for m in self.DEFAULT_MODELS if m not in models]

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    def supports(self, language: str) -> bool:
        return _supports_language(language)

    def adapt_params(self, params: dict[str, Any]) -> dict[str, Any]:
        # Workers AI model names mean nothing here
        model = params.get("model") or ""
        if model.startswith("@cf/") or "/" not in model:
            params.pop("model", None)
        return params

    async def transcribe(self, audio: bytes, language: str = "auto", model: str = "",
                         prompt: str = "", mime_type: str = "") -> TranscriptionResult:
        if not self.api_key:
            raise ProviderError("HuggingFace API key not configured", provider=self.name)

        models = [model] if model else self.models_for(language)
        client = await self._get_client()
        last_status = 0
        for candidate in models:
            resp = await client.post(
                f"{self.base_url}/{candidate}",
                content=audio,
                headers={"Content-Type": mime_type or "audio/mpeg"},
            )
            if resp.status_code in (404, 410):
                logger.warning("huggingface_model_unavailable", model=candidate, status=resp.status_code)
                last_status = resp.status_code
                continue
            if resp.status_code >= 400:
                logger.error("huggingface_stt_error", model=candidate,
                             status=resp.status_code, body=resp.text[:500])
                raise ProviderError(
                    f"HuggingFace transcription failed ({resp.status_code})",
                    provider=self.name, code=resp.status_code,
                    details={"status": resp.status_code, "model": candidate},
                )
            data = resp.json()
            if isinstance(data, list):
                data = data[0] if data else {}
            return TranscriptionResult(
                text=(data.get("text") or "").strip(),
                confidence=float(data.get("confidence") or 0.9),
                language=language if language != "auto" else "",
                provider=self.name,
            )

        raise ProviderError(
            f"HuggingFace transcription failed: no model available ({last_status})",
            provider=self.name, code=last_status,
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ══════════════════════════════════════════════════════════════
#  OPENAI WHISPER
# ══════════════════════════════════════════════════════════════

class OpenAIWhisperSTT:
    """OpenAI audio transcription through the official SDK."""

    name = STTProvider.OPENAI.value
    DEFAULT_MODEL = "whisper-1"

    def __init__(self, api_key: str, timeout_s: float = 300.0):
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = None

    async def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout_s)
            logger.info("stt_client_initialized", provider="openai")
        return self._client

    def supports(self, language: str) -> bool:
        return _supports_language(language)

    def adapt_params(self, params: dict[str, Any]) -> dict[str, Any]:
        if not str(params.get("model") or "").startswith("whisper"):
            params.pop("model", None)
        return params

    async def transcribe(self, audio: bytes, language: str = "auto", model: str = "",
                         prompt: str = "", mime_type: str = "") -> TranscriptionResult:
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured", provider=self.name)
        client = await self._get_client()
        kwargs: dict[str, Any] = {
            "model": model or self.DEFAULT_MODEL,
            "file": ("audio", audio, mime_type or "audio/mpeg"),
            "response_format": "verbose_json",
        }
        if language != "auto":
            kwargs["language"] = base_language(language)
        if prompt:
            kwargs["prompt"] = prompt
        import openai
        try:
            response = await client.audio.transcriptions.create(**kwargs)
        except openai.APIError as e:
            raise from_sdk_error(e, self.name) from e
        return TranscriptionResult(
            text=(getattr(response, "text", "") or "").strip(),
            language=getattr(response, "language", "") or "",
            duration=getattr(response, "duration", None),
            provider=self.name,
        )

    async def close(self) -> None:
        self._client = None
