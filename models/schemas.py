"""
Core data models for the VoiceQA platform.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Speaker(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    UNKNOWN = "unknown"


class CallStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    TRANSCRIBING = "transcribing"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


CALL_PROGRESS: dict[CallStatus, int] = {
    CallStatus.PENDING: 0,
    CallStatus.UPLOADING: 10,
    CallStatus.PROCESSING: 20,
    CallStatus.TRANSCRIBING: 60,
    CallStatus.EVALUATING: 90,
    CallStatus.COMPLETED: 100,
    CallStatus.FAILED: 0,
}


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Grade(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


class WebhookEvent(str, Enum):
    CALL_COMPLETED = "call.completed"
    CALL_FAILED = "call.failed"


# ──────────────────────────────────────────────────────────────
#  Transcript
# ──────────────────────────────────────────────────────────────

class TranscriptEntry(BaseModel):
    """One speaker turn. Offsets are milliseconds from call start."""
    speaker: Speaker = Speaker.UNKNOWN
    message: str
    timestamp: int = 0
    duration: int = 0
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    language: str = ""
    audio_url: str = ""

    model_config = {"frozen": True}

    @property
    def end(self) -> int:
        return self.timestamp + self.duration


# ──────────────────────────────────────────────────────────────
#  Evaluation
# ──────────────────────────────────────────────────────────────

class LatencyMetric(BaseModel):
    average_response_time: float = 0
    median_response_time: float = 0
    p95_response_time: float = 0
    score: int = 0


class InterruptionMetric(BaseModel):
    total_interruptions: int = 0
    agent_interruptions_on_customer: int = 0
    customer_interruptions_on_agent: int = 0
    interruption_rate: float = 0.0          # per minute
    interruption_timestamps: list[int] = []
    score: int = 0


class PronunciationMetric(BaseModel):
    average_confidence: float = 0.0
    clarity_score: int = 0
    words_per_minute: float = 0.0
    score: int = 0


class RepetitionMetric(BaseModel):
    repeated_phrases: list[dict[str, Any]] = []
    exact_repetitions: int = 0
    loop_detected: bool = False
    score: int = 0


class DisconnectionMetric(BaseModel):
    was_natural_ending: bool = False
    disconnection_type: str = "abrupt"
    score: int = 0


class JobsToBeDoneMetric(BaseModel):
    was_task_completed: bool = False
    attempted_jobs: list[str] = []
    completed_jobs: list[str] = []
    missing_steps: list[str] = []
    reason: str = ""
    analysis_method: str = "generic"        # knowledge-base | generic
    score: int = 0


class CriticalIssue(BaseModel):
    category: str
    description: str
    severity: str = "critical"
    affected_metric: str


class Recommendation(BaseModel):
    title: str
    description: str
    priority: str = "medium"
    related_metrics: list[str] = []


class EvaluationResult(BaseModel):
    overall_score: int = 0
    processed_at: datetime = Field(default_factory=_utcnow)
    latency: LatencyMetric = Field(default_factory=LatencyMetric)
    interruption: InterruptionMetric = Field(default_factory=InterruptionMetric)
    pronunciation: PronunciationMetric = Field(default_factory=PronunciationMetric)
    repetition: RepetitionMetric = Field(default_factory=RepetitionMetric)
    disconnection: DisconnectionMetric = Field(default_factory=DisconnectionMetric)
    jobs_to_be_done: JobsToBeDoneMetric = Field(default_factory=JobsToBeDoneMetric)
    critical_issues: list[CriticalIssue] = []
    recommendations: list[Recommendation] = []

    @property
    def grade(self) -> Grade:
        return grade_for(self.overall_score)

    def metric_scores(self) -> dict[str, int]:
        return {
            "latency": self.latency.score,
            "interruption": self.interruption.score,
            "pronunciation": self.pronunciation.score,
            "repetition": self.repetition.score,
            "disconnection": self.disconnection.score,
            "jobs_to_be_done": self.jobs_to_be_done.score,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["grade"] = self.grade.value
        return data


def grade_for(score: float) -> Grade:
    if score >= 90:
        return Grade.A
    if score >= 80:
        return Grade.B
    if score >= 70:
        return Grade.C
    if score >= 60:
        return Grade.D
    return Grade.F


# ──────────────────────────────────────────────────────────────
#  Call records
# ──────────────────────────────────────────────────────────────

class CallMetadata(BaseModel):
    call_date: Optional[datetime] = None
    customer_phone_number: str = ""
    agent_id: str = ""
    agent_name: str = ""
    campaign_id: str = ""
    region: str = ""
    custom_fields: dict[str, Any] = {}


class CallRecord(BaseModel):
    """An uploaded call and everything the pipeline learned about it."""
    id: str = Field(default_factory=_new_id)
    customer_id: str = "default-customer"
    file_name: str = ""
    file_size: int = 0
    audio_ref: str = ""
    audio_hash: str = ""
    duration: int = 0                          # ms
    language: str = ""
    status: CallStatus = CallStatus.PENDING
    progress: int = 0
    metadata: CallMetadata = Field(default_factory=CallMetadata)
    transcripts: list[TranscriptEntry] = []
    evaluation: Optional[EvaluationResult] = None
    error: Optional[dict[str, Any]] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ──────────────────────────────────────────────────────────────
#  Knowledge base
# ──────────────────────────────────────────────────────────────

class ExpectedJob(BaseModel):
    id: str
    name: str
    description: str = ""
    required_steps: list[str] = []
    completion_indicators: list[str] = []


class KnowledgeBaseEntry(BaseModel):
    agent_id: str
    customer_id: str = "default-customer"
    expected_jobs: list[ExpectedJob] = []
    language: str = "ar"
    notes: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversation runs
# ──────────────────────────────────────────────────────────────

class RunConfig(BaseModel):
    """What the simulated caller dials and how it behaves."""
    agent_endpoint: str                        # phone number of the agent under test
    language: str = "ar"
    dialect: str = "egyptian"
    persona: str = "polite_customer"
    scenario: str = "Customer inquiry"
    max_turns: int = 10
    agent_id: str = ""


class CallControl(BaseModel):
    call_sid: str = ""
    status: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ConversationRun(BaseModel):
    id: str = Field(default_factory=_new_id)
    customer_id: str = "default-customer"
    config: RunConfig
    status: RunStatus = RunStatus.PENDING
    call: CallControl = Field(default_factory=CallControl)
    transcripts: list[TranscriptEntry] = []
    evaluation: Optional[EvaluationResult] = None
    metadata: dict[str, Any] = {}
    error: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Webhooks
# ──────────────────────────────────────────────────────────────

class WebhookSubscription(BaseModel):
    customer_id: str
    url: str
    secret: str = ""
    events: list[WebhookEvent] = [WebhookEvent.CALL_COMPLETED, WebhookEvent.CALL_FAILED]
