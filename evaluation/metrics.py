"""
The six call-quality metrics.

Each metric is a pure function of the ordered transcript (jobs-to-be-done
may also consult a language model) and returns its pydantic sub-model
with a score clamped to [0, 100]. A score of 0 means "no signal": the
overall score leaves it out.

Offsets and durations are milliseconds from call start.
"""
from __future__ import annotations

import json
import re
import structlog
from collections import Counter
from typing import Optional, Protocol

from models.schemas import (
    DisconnectionMetric, InterruptionMetric, JobsToBeDoneMetric, KnowledgeBaseEntry,
    LatencyMetric, PronunciationMetric, RepetitionMetric, Speaker, TranscriptEntry,
)

logger = structlog.get_logger()

MIN_RESPONSE_GAP_MS = 100
MAX_RESPONSE_GAP_MS = 10_000
INTERRUPTION_OVERLAP_MS = 500
OPTIMAL_WPM = (120, 180)

NATURAL_ENDINGS = (
    "goodbye", "thank you", "thanks", "bye", "have a nice day",
    "مع السلامة", "باي", "شكرا",
)
COMPLETION_WORDS = (
    "done", "completed", "finished", "resolved", "fixed", "updated",
    "تم", "انتهى", "اكتمل",
)
TASK_WORDS = ("inform", "help", "assist", "support", "service", "مساعد", "مساعدة")


def _clamp(score: float) -> int:
    return int(max(0, min(100, round(score))))


def _call_minutes(transcripts: list[TranscriptEntry]) -> float:
    return transcripts[-1].end / 60000 if transcripts else 0.0


# ══════════════════════════════════════════════════════════════
#  LATENCY
# ══════════════════════════════════════════════════════════════

def response_gaps(transcripts: list[TranscriptEntry]) -> list[int]:
    """Silence between a speaker finishing and the other speaker starting."""
    gaps = []
    for prev, curr in zip(transcripts, transcripts[1:]):
        if prev.speaker == curr.speaker:
            continue
        gap = curr.timestamp - prev.end
        if MIN_RESPONSE_GAP_MS < gap < MAX_RESPONSE_GAP_MS:
            gaps.append(gap)
    return gaps


def latency_score(p95_ms: float) -> int:
    if p95_ms > 2500:
        return 50
    if p95_ms > 2000:
        return 60
    if p95_ms > 1500:
        return 75
    if p95_ms > 800:
        return 90
    return 100


def calculate_latency(transcripts: list[TranscriptEntry]) -> LatencyMetric:
    gaps = response_gaps(transcripts)
    if not gaps:
        return LatencyMetric(score=100)
    ordered = sorted(gaps)
    p95 = ordered[int(len(ordered) * 0.95)]
    return LatencyMetric(
        average_response_time=round(sum(gaps) / len(gaps)),
        median_response_time=ordered[len(ordered) // 2],
        p95_response_time=p95,
        score=latency_score(p95),
    )


# ══════════════════════════════════════════════════════════════
#  INTERRUPTION
# ══════════════════════════════════════════════════════════════

def analyze_interruption(transcripts: list[TranscriptEntry]) -> InterruptionMetric:
    if len(transcripts) < 2:
        return InterruptionMetric(score=100)

    on_customer = on_agent = 0
    timestamps: list[int] = []
    for prev, curr in zip(transcripts, transcripts[1:]):
        if prev.speaker == curr.speaker:
            continue
        if prev.end - curr.timestamp > INTERRUPTION_OVERLAP_MS:
            timestamps.append(curr.timestamp)
            if curr.speaker in (Speaker.AGENT, Speaker.UNKNOWN):
                on_customer += 1
            else:
                on_agent += 1

    total = len(timestamps)
    minutes = _call_minutes(transcripts)
    rate = total / minutes if minutes > 0 else 0.0

    if rate > 4:
        score = 50
    elif rate > 2:
        score = 65
    elif rate > 1:
        score = 80
    elif total > 0:
        score = 90
    else:
        score = 100

    return InterruptionMetric(
        total_interruptions=total,
        agent_interruptions_on_customer=on_customer,
        customer_interruptions_on_agent=on_agent,
        interruption_rate=round(rate, 2),
        interruption_timestamps=timestamps,
        score=score,
    )


# ══════════════════════════════════════════════════════════════
#  PRONUNCIATION
# ══════════════════════════════════════════════════════════════

def analyze_pronunciation(transcripts: list[TranscriptEntry]) -> PronunciationMetric:
    if not transcripts:
        return PronunciationMetric()

    confidences = [t.confidence or 0.9 for t in transcripts]
    average = sum(confidences) / len(confidences)
    clarity = round(average * 100)

    words = sum(len(t.message.split()) for t in transcripts)
    minutes = _call_minutes(transcripts)
    wpm = round(words / minutes) if minutes > 0 else 0

    score = clarity
    low, high = OPTIMAL_WPM
    if wpm < low or wpm > high:
        score -= 10

    return PronunciationMetric(
        average_confidence=round(average, 3),
        clarity_score=clarity,
        words_per_minute=wpm,
        score=_clamp(score),
    )


# ══════════════════════════════════════════════════════════════
#  REPETITION
# ══════════════════════════════════════════════════════════════

def analyze_repetition(transcripts: list[TranscriptEntry]) -> RepetitionMetric:
    if len(transcripts) < 2:
        return RepetitionMetric(score=100)

    messages = [m for m in (t.message.lower().strip() for t in transcripts) if m]
    repeated: list[dict] = []

    # one repeated 3-5 word phrase is enough to count a message
    for message in messages:
        words = message.split()
        found = None
        for length in range(3, min(5, len(words)) + 1):
            for start in range(len(words) - length + 1):
                phrase = " ".join(words[start:start + length])
                occurrences = sum(1 for m in messages if phrase in m)
                if occurrences > 1:
                    found = {"phrase": phrase, "occurrences": occurrences}
                    break
            if found:
                break
        if found:
            repeated.append(found)

    loop = any(count >= 3 for count in Counter(messages).values())
    exact = len(repeated)

    if loop:
        score = 40
    elif exact > 5:
        score = 50
    elif exact > 3:
        score = 70
    elif exact > 0:
        score = 85
    else:
        score = 100

    return RepetitionMetric(
        repeated_phrases=repeated[:5],
        exact_repetitions=exact,
        loop_detected=loop,
        score=score,
    )


# ══════════════════════════════════════════════════════════════
#  DISCONNECTION
# ══════════════════════════════════════════════════════════════

def analyze_disconnection(transcripts: list[TranscriptEntry]) -> DisconnectionMetric:
    if not transcripts or not transcripts[-1].message.strip():
        logger.warning("disconnection_no_transcript")
        return DisconnectionMetric()
    last = transcripts[-1].message.lower()
    natural = any(ending in last for ending in NATURAL_ENDINGS)
    return DisconnectionMetric(
        was_natural_ending=natural,
        disconnection_type="natural" if natural else "abrupt",
        score=90 if natural else 50,
    )


# ══════════════════════════════════════════════════════════════
#  JOBS TO BE DONE
# ══════════════════════════════════════════════════════════════

class JobsAnalyzer(Protocol):
    async def analyze(self, transcripts: list[TranscriptEntry],
                      knowledge_base: Optional[KnowledgeBaseEntry]) -> JobsToBeDoneMetric:
        ...


class KeywordJobsAnalyzer:
    """Completion words beat task words beat nothing."""

    async def analyze(self, transcripts: list[TranscriptEntry],
                      knowledge_base: Optional[KnowledgeBaseEntry] = None) -> JobsToBeDoneMetric:
        text = " ".join(t.message for t in transcripts).lower()
        if not text.strip():
            return JobsToBeDoneMetric()
        completed = any(w in text for w in COMPLETION_WORDS)
        if completed:
            score = 80
        elif any(w in text for w in TASK_WORDS):
            score = 60
        else:
            score = 40
        return JobsToBeDoneMetric(was_task_completed=completed, score=score,
                                  analysis_method="generic")


JOBS_PROMPT = """Analyze this customer service conversation against the agent's expected jobs.

Agent's Expected Jobs:
{jobs}

Conversation:
{conversation}

Determine:
1. Which expected job(s) were attempted?
2. Were the required steps completed?
3. Was the job successfully completed?
4. Rate completion on a scale of 0-100.

Respond in JSON format only:
{{
  "attemptedJobs": ["job-id-1"],
  "completedJobs": ["job-id-1"],
  "missingSteps": [],
  "score": 85,
  "reason": "Job was completed successfully"
}}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class KnowledgeBaseJobsAnalyzer:
    """
    Asks a language model to grade the transcript against the agent's
    expected jobs. Without a knowledge base, or when the model call or
    its JSON fails, the keyword fallback answers instead.
    """

    def __init__(self, llm, fallback: JobsAnalyzer = None):
        self.llm = llm
        self.fallback = fallback or KeywordJobsAnalyzer()

    def build_prompt(self, transcripts: list[TranscriptEntry], knowledge_base: KnowledgeBaseEntry) -> str:
        jobs = "\n".join(
            f"- {job.name}: {job.description}\n  Required steps: {', '.join(job.required_steps)}"
            for job in knowledge_base.expected_jobs
        )
        conversation = "\n".join(f"{t.speaker.value}: {t.message}" for t in transcripts)
        return JOBS_PROMPT.format(jobs=jobs, conversation=conversation)

    async def analyze(self, transcripts: list[TranscriptEntry],
                      knowledge_base: Optional[KnowledgeBaseEntry] = None) -> JobsToBeDoneMetric:
        if not transcripts or not transcripts[0].message:
            return JobsToBeDoneMetric()
        if knowledge_base is None or not knowledge_base.expected_jobs or self.llm is None:
            return await self.fallback.analyze(transcripts, knowledge_base)

        language = (transcripts[0].language or "ar").split("-")[0].lower()
        try:
            text = await self.llm.complete_with_fallback(
                system=f"You are a call quality analyst. The conversation language is '{language}'.",
                messages=[{"role": "user", "content": self.build_prompt(transcripts, knowledge_base)}],
                max_tokens=300,
                temperature=0.3,
            )
            match = _JSON_OBJECT.search(text or "")
            if match:
                parsed = json.loads(match.group(0))
                completed = list(parsed.get("completedJobs") or [])
                return JobsToBeDoneMetric(
                    was_task_completed=len(completed) > 0,
                    attempted_jobs=list(parsed.get("attemptedJobs") or []),
                    completed_jobs=completed,
                    missing_steps=list(parsed.get("missingSteps") or []),
                    reason=str(parsed.get("reason") or ""),
                    analysis_method="knowledge-base",
                    score=_clamp(float(parsed.get("score") or 0)),
                )
            logger.warning("jobs_analysis_no_json", agent_id=knowledge_base.agent_id)
        except Exception as e:
            logger.warning("jobs_analysis_failed", agent_id=knowledge_base.agent_id, error=str(e))

        return await self.fallback.analyze(transcripts, knowledge_base)
