"""
Speaker diarization strategies.

Transcription backends return one block of text with no speaker labels.
A DiarizationStrategy turns that text into ordered TranscriptEntry rows.
RuleBasedDiarizer is the default: sentence split, first sentence to the
customer, alternate after that, and force the agent role on any sentence
that contains a typical agent opening or closing phrase.
"""
from __future__ import annotations

import re
from typing import Protocol

from models.schemas import Speaker, TranscriptEntry

AGENT_PHRASES = (
    "how can i help",
    "how may i assist",
    "thank you for calling",
    "is there anything else",
    "have a nice day",
    "goodbye",
    "كيف يمكنني المساعدة",
    "شكرا لاتصالك",
)

_SENTENCE_BREAK = re.compile(r"[.!?؟]\s+")


class DiarizationStrategy(Protocol):
    def diarize(self, text: str, duration_ms: int, language: str = "",
                confidence: float = 0.9) -> list[TranscriptEntry]:
        ...


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_BREAK.split(text.strip()) if s.strip()]


class RuleBasedDiarizer:
    """Alternating roles with an agent-phrase override."""

    def __init__(self, agent_phrases: tuple[str, ...] = AGENT_PHRASES):
        self.agent_phrases = agent_phrases

    def is_agent_phrase(self, sentence: str) -> bool:
        lowered = sentence.lower()
        return any(phrase in lowered for phrase in self.agent_phrases)

    def diarize(self, text: str, duration_ms: int, language: str = "",
                confidence: float = 0.9) -> list[TranscriptEntry]:
        sentences = split_sentences(text)
        if not sentences:
            return [TranscriptEntry(
                speaker=Speaker.UNKNOWN, message=text.strip(), timestamp=0,
                duration=duration_ms, confidence=confidence, language=language,
            )]

        # evenly spaced; the backend gives no word timings
        per_sentence = duration_ms / len(sentences) if duration_ms > 0 else 0
        entries: list[TranscriptEntry] = []
        for index, sentence in enumerate(sentences):
            if index == 0:
                speaker = Speaker.CUSTOMER
            elif self.is_agent_phrase(sentence):
                speaker = Speaker.AGENT
            elif entries[-1].speaker == Speaker.CUSTOMER:
                speaker = Speaker.AGENT
            else:
                speaker = Speaker.CUSTOMER
            entries.append(TranscriptEntry(
                speaker=speaker,
                message=sentence,
                timestamp=round(index * per_sentence),
                duration=round(per_sentence),
                confidence=confidence,
                language=language,
            ))
        return entries
