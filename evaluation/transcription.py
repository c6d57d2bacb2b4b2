"""
Transcription stage: audio bytes → diarized transcript.

Byte-identical audio is transcribed once: the transcript is cached under
the audio's SHA-256 fingerprint with no expiry.
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from typing import Any, Optional

from evaluation.cache import ContentCache, transcript_key
from evaluation.diarization import DiarizationStrategy, RuleBasedDiarizer
from evaluation.performance import PerformanceMonitor
from models.schemas import TranscriptEntry
from voice.providers import Capability, ProviderRegistry
from voice.stt import TranscriptionResult

logger = structlog.get_logger()

_ARABIC_SCRIPT = re.compile(r"[\u0600-\u06FF]")


def detect_language(text: str) -> str:
    """Script heuristic for when the backend reports no language."""
    return "ar" if _ARABIC_SCRIPT.search(text or "") else "en"


@dataclass
class TranscriptOutcome:
    transcripts: list[TranscriptEntry]
    language: str
    text: str
    provider: str = ""
    cached: bool = False


class TranscriptionService:

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ContentCache,
        monitor: PerformanceMonitor,
        diarizer: DiarizationStrategy = None,
        model: str = "",
        transcript_ttl: float = 0,
        timeout_s: Optional[float] = None,
    ):
        self.registry = registry
        self.cache = cache
        self.monitor = monitor
        self.diarizer = diarizer or RuleBasedDiarizer()
        self.model = model
        self.transcript_ttl = transcript_ttl
        self.timeout_s = timeout_s

    async def transcribe_text(
        self,
        audio: bytes,
        language: str = "auto",
        mime_type: str = "",
        call_id: str = "",
    ) -> tuple[TranscriptionResult, str]:
        """One registry call; returns (result, provider name)."""
        params: dict[str, Any] = {"audio": audio, "language": language or "auto", "mime_type": mime_type}
        if self.model:
            params["model"] = self.model

        def _timed(name: str, duration_ms: float, ok: bool) -> None:
            if call_id:
                self.monitor.record_external_call(call_id, duration_ms)

        return await self.registry.call(
            Capability.STT,
            language or "auto",
            lambda provider, kw: provider.transcribe(**kw),
            params,
            timeout_s=self.timeout_s,
            on_attempt=_timed,
        )

    async def transcribe_call(
        self,
        call_id: str,
        audio: bytes,
        language: str = "auto",
        mime_type: str = "",
    ) -> TranscriptOutcome:
        key = transcript_key(audio)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("transcript_cache_hit", call_id=call_id, key=key[:24])
            return TranscriptOutcome(
                transcripts=[TranscriptEntry.model_validate(t) for t in cached["transcripts"]],
                language=cached["language"],
                text=cached.get("text", ""),
                cached=True,
            )

        logger.info("transcription_started", call_id=call_id, bytes=len(audio),
                    language=language or "auto")
        result, provider = await self.transcribe_text(audio, language, mime_type, call_id)

        detected = result.language or "unknown"
        if detected == "unknown" and result.text:
            detected = detect_language(result.text)

        duration_ms = round(result.duration * 1000) if result.duration else 0
        transcripts = self.diarizer.diarize(result.text, duration_ms, detected, result.confidence)

        self.cache.set(key, {
            "text": result.text,
            "language": detected,
            "transcripts": [t.model_dump(mode="json") for t in transcripts],
        }, ttl=self.transcript_ttl)

        logger.info("transcription_completed", call_id=call_id, provider=provider,
                    chars=len(result.text), entries=len(transcripts), language=detected)
        return TranscriptOutcome(transcripts=transcripts, language=detected,
                                 text=result.text, provider=provider)
