"""
Voice Providers — Capability registry with ordered fallback.

Every external backend (speech-to-text, text-to-speech, language model,
telephony call control) is registered at runtime under a capability and
advertises which inputs it handles through supports(hint). The hint is a
language code for speech, a model name for language models.

The registry tries candidates in order (primary first). A failure that is
specific to the current provider (size or format limits, availability,
timeouts) advances to the next candidate, whose parameters are adjusted
first (e.g. a model hint it cannot serve is dropped). A failure that no
other provider could fix stops the chain. Either way the raised
AllProvidersFailed lists every provider tried and why each failed.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from evaluation.errors import ErrorClassifier, ErrorKind

logger = structlog.get_logger()
_classifier = ErrorClassifier()


# ══════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════

class Capability(str, Enum):
    STT = "stt"
    TTS = "tts"
    LLM = "llm"
    TELEPHONY = "telephony"


class STTProvider(str, Enum):
    CLOUDFLARE = "cloudflare"       # Workers AI whisper, 25MB request cap
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"


class TTSProvider(str, Enum):
    ELEVENLABS = "elevenlabs"


class LLMProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    CLOUDFLARE = "cloudflare"
    HUGGINGFACE = "huggingface"


class TelephonyProvider(str, Enum):
    TWILIO = "twilio"
    PLIVO = "plivo"


# Error code a backend raises when the payload exceeds its request size cap.
SIZE_LIMIT_CODE = 3006

SUPPORTED_SPEECH_LANGUAGES = ("ar", "en", "es", "fr", "de", "it", "pt", "ru", "zh", "ja", "ko")


def base_language(code: str) -> str:
    """'ar-EG' → 'ar'."""
    return (code or "").split("-")[0].lower()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ProviderError(Exception):
    """
    Failure raised by a backend.

    provider_specific=True means another backend might succeed where this
    one failed (size cap, unsupported format, outage).
    """

    def __init__(self, message: str, provider: str = "", code: Any = None,
                 provider_specific: bool = True, details: dict[str, Any] = None):
        super().__init__(message)
        self.provider = provider
        self.code = code
        self.provider_specific = provider_specific
        self.details = details or {}


@dataclass
class ProviderAttempt:
    provider: str
    error: str
    error_type: str
    duration_ms: float


class AllProvidersFailed(Exception):
    """Every candidate for a capability failed; carries each attempt."""

    _NOUNS = {
        Capability.STT: "transcription",
        Capability.TTS: "speech synthesis",
        Capability.LLM: "language model",
        Capability.TELEPHONY: "telephony",
    }

    def __init__(self, capability: Capability, attempts: list[ProviderAttempt], hint: str = ""):
        self.capability = capability
        self.attempts = attempts
        self.hint = hint
        if attempts:
            tried = "; ".join(f"{a.provider}: {a.error}" for a in attempts)
        else:
            tried = f"no provider supports '{hint}'"
        super().__init__(f"All {self._NOUNS[capability]} providers failed ({tried})")

    @property
    def details(self) -> dict[str, Any]:
        return {
            "capability": self.capability.value,
            "hint": self.hint,
            "attempts": [a.__dict__ for a in self.attempts],
        }


def from_sdk_error(error: BaseException, provider: str) -> ProviderError:
    """Wrap an anthropic/openai SDK exception. Rejected requests stop the chain."""
    status = getattr(error, "status_code", None)
    return ProviderError(
        str(error) or type(error).__name__, provider=provider, code=status,
        provider_specific=status not in (400, 422),
        details={"error_type": type(error).__name__},
    )


_FALLBACK_KINDS = (ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT_ERROR, ErrorKind.TRANSCRIPTION_FAILED)


def is_provider_specific(error: BaseException) -> bool:
    """Would a different backend plausibly succeed?"""
    if isinstance(error, ProviderError):
        return error.provider_specific
    if isinstance(error, (httpx.HTTPError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    # SDK exceptions and anything else: decide by what the failure looks like
    return _classifier.classify(error).kind in _FALLBACK_KINDS


# ══════════════════════════════════════════════════════════════
#  PROVIDER PROTOCOL
# ══════════════════════════════════════════════════════════════

@runtime_checkable
class Provider(Protocol):
    """
    Common shape of every registered backend.

    Backends may also define adapt_params(params) -> params to strip or
    rewrite arguments they cannot honour before they are invoked.
    """

    name: str

    def supports(self, hint: str) -> bool:
        ...


# ══════════════════════════════════════════════════════════════
#  PROVIDER REGISTRY
# ══════════════════════════════════════════════════════════════

class ProviderRegistry:
    """
    Central registry of interchangeable backends per capability.

    Usage:
        registry.register(Capability.STT, CloudflareWhisperSTT(...), primary=True)
        registry.register(Capability.STT, HuggingFaceSTT(...))
        result = await registry.call(
            Capability.STT, "ar",
            lambda p, params: p.transcribe(**params),
            {"audio": data, "language": "ar", "model": "@cf/openai/whisper"},
        )
    """

    def __init__(self, default_timeout_s: float = 60.0):
        self._providers: dict[Capability, list[Provider]] = {c: [] for c in Capability}
        self.default_timeout_s = default_timeout_s

    # ── Registration ──────────────────────────────────────────

    def register(self, capability: Capability, provider: Provider, primary: bool = False) -> None:
        chain = self._providers[capability]
        chain[:] = [p for p in chain if p.name != provider.name]
        if primary:
            chain.insert(0, provider)
        else:
            chain.append(provider)
        logger.info("provider_registered", capability=capability.value,
                    name=provider.name, position=chain.index(provider))

    def unregister(self, capability: Capability, name: str) -> bool:
        chain = self._providers[capability]
        before = len(chain)
        chain[:] = [p for p in chain if p.name != name]
        return len(chain) < before

    # ── Lookup ────────────────────────────────────────────────

    def select(self, capability: Capability, hint: str = "") -> list[Provider]:
        """Ordered candidates that support the hint (all, for an empty hint)."""
        return [p for p in self._providers[capability] if not hint or p.supports(hint)]

    def get(self, capability: Capability, name: str) -> Optional[Provider]:
        return next((p for p in self._providers[capability] if p.name == name), None)

    def list_providers(self) -> dict[str, list[str]]:
        return {c.value: [p.name for p in chain] for c, chain in self._providers.items()}

    async def close(self) -> None:
        for chain in self._providers.values():
            for provider in chain:
                close = getattr(provider, "close", None)
                if close is not None:
                    try:
                        await close()
                    except Exception as e:
                        logger.warning("provider_close_failed", name=provider.name, error=str(e))

    # ── Invocation with fallback ──────────────────────────────

    async def call(
        self,
        capability: Capability,
        hint: str,
        operation: Callable[[Provider, dict[str, Any]], Awaitable[Any]],
        params: dict[str, Any] = None,
        timeout_s: Optional[float] = None,
        on_attempt: Optional[Callable[[str, float, bool], None]] = None,
    ) -> tuple[Any, str]:
        """
        Run operation against each candidate until one succeeds.

        Returns (result, provider_name). on_attempt(name, duration_ms, ok)
        is invoked after every attempt, for timing.
        """
        candidates = self.select(capability, hint)
        attempts: list[ProviderAttempt] = []
        timeout = timeout_s or self.default_timeout_s

        for index, provider in enumerate(candidates):
            call_params = dict(params or {})
            adapt = getattr(provider, "adapt_params", None)
            if adapt is not None:
                call_params = adapt(call_params)

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(operation(provider, call_params), timeout=timeout)
            except Exception as e:
                duration_ms = (time.monotonic() - started) * 1000
                if on_attempt:
                    on_attempt(provider.name, duration_ms, False)
                attempts.append(ProviderAttempt(
                    provider=provider.name, error=str(e) or type(e).__name__,
                    error_type=type(e).__name__, duration_ms=round(duration_ms, 1),
                ))
                has_next = index + 1 < len(candidates)
                logger.warning("provider_failed", capability=capability.value,
                               provider=provider.name, error=str(e),
                               falling_back=has_next and is_provider_specific(e))
                if not is_provider_specific(e):
                    break
                continue

            duration_ms = (time.monotonic() - started) * 1000
            if on_attempt:
                on_attempt(provider.name, duration_ms, True)
            if attempts:
                logger.info("provider_fallback_succeeded", capability=capability.value,
                            provider=provider.name, failed=[a.provider for a in attempts])
            return result, provider.name

        raise AllProvidersFailed(capability, attempts, hint)
