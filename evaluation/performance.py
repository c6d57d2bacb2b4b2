"""
Performance Monitor — per-stage and per-external-call timing for the pipeline.

Tracks, per call:
- start/end timestamps for each pipeline stage
- external provider calls and storage operations (count / total / avg)

Finalizing a call drops its timers and detailed measurements and keeps a
compact summary, which feeds aggregate p50/p95/p99 reporting filtered by
customer and date range.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = structlog.get_logger()


class Stage(str, Enum):
    TRANSCRIPTION = "transcription"
    EVALUATION = "evaluation"
    STORAGE = "storage"
    NOTIFICATION = "notification"


@dataclass
class StageMeasurement:
    stage: str
    duration_ms: float
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationStats:
    count: int = 0
    total_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms

    def to_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "totalDuration": round(self.total_ms, 1),
            "averageDuration": round(self.avg_ms, 1),
        }


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank by floor index, clamped to the last element."""
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = min(int(len(ordered) * pct / 100), len(ordered) - 1)
    return ordered[idx]


# ══════════════════════════════════════════════════════════════
#  CALL PERFORMANCE
# ══════════════════════════════════════════════════════════════

class CallPerformance:
    """Measurements for one in-flight call."""

    def __init__(self, call_id: str, customer_id: str = ""):
        self.call_id = call_id
        self.customer_id = customer_id
        self.stages: list[StageMeasurement] = []
        self.external_calls = OperationStats()
        self.storage_ops = OperationStats()

    @property
    def total_ms(self) -> float:
        return sum(m.duration_ms for m in self.stages)

    def stage_ms(self, stage: str) -> float:
        """Last recorded duration for a stage."""
        for m in reversed(self.stages):
            if m.stage == stage:
                return m.duration_ms
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "customerId": self.customer_id,
            "totalDuration": round(self.total_ms, 1),
            "transcriptionDuration": round(self.stage_ms(Stage.TRANSCRIPTION.value), 1),
            "evaluationDuration": round(self.stage_ms(Stage.EVALUATION.value), 1),
            "storageDuration": round(self.stage_ms(Stage.STORAGE.value), 1),
            "stages": [
                {"stage": m.stage, "duration": round(m.duration_ms, 1),
                 "timestamp": m.timestamp.isoformat(), "metadata": m.metadata}
                for m in self.stages
            ],
            "apiCalls": self.external_calls.to_dict(),
            "storageOps": self.storage_ops.to_dict(),
        }


@dataclass
class CallSummary:
    """What survives finalize(): enough for aggregates."""
    call_id: str
    customer_id: str
    total_ms: float
    transcription_ms: float
    evaluation_ms: float
    finished_at: datetime


# ══════════════════════════════════════════════════════════════
#  MONITOR
# ══════════════════════════════════════════════════════════════

class PerformanceMonitor:

    def __init__(self, history_size: int = 5000, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._calls: dict[str, CallPerformance] = {}
        self._timers: dict[str, dict[str, float]] = {}       # call_id → stage → start
        self._history: deque[CallSummary] = deque(maxlen=history_size)

    def _call(self, call_id: str, customer_id: str = "") -> CallPerformance:
        perf = self._calls.get(call_id)
        if perf is None:
            perf = CallPerformance(call_id, customer_id)
            self._calls[call_id] = perf
        elif customer_id and not perf.customer_id:
            perf.customer_id = customer_id
        return perf

    # ── Stage timing ──────────────────────────────────────────

    def start_stage(self, call_id: str, stage: str, customer_id: str = "") -> None:
        self._call(call_id, customer_id)
        self._timers.setdefault(call_id, {})[str(stage)] = self._clock()

    def end_stage(self, call_id: str, stage: str, metadata: dict[str, Any] = None) -> float:
        """Returns the stage duration in ms, or 0 when the stage never started."""
        start = self._timers.get(call_id, {}).pop(str(stage), None)
        if start is None:
            logger.warning("stage_end_without_start", call_id=call_id, stage=str(stage))
            return 0.0
        duration_ms = (self._clock() - start) * 1000
        self.record_stage(call_id, str(stage), duration_ms, metadata)
        return duration_ms

    def record_stage(self, call_id: str, stage: str, duration_ms: float,
                     metadata: dict[str, Any] = None) -> None:
        self._call(call_id).stages.append(StageMeasurement(
            stage=str(stage), duration_ms=duration_ms,
            timestamp=datetime.now(timezone.utc), metadata=metadata or {},
        ))

    # ── External operations ───────────────────────────────────

    def record_external_call(self, call_id: str, duration_ms: float) -> None:
        self._call(call_id).external_calls.record(duration_ms)

    def record_storage_op(self, call_id: str, duration_ms: float) -> None:
        self._call(call_id).storage_ops.record(duration_ms)

    # ── Reporting ─────────────────────────────────────────────

    def get_metrics(self, call_id: str) -> Optional[dict[str, Any]]:
        perf = self._calls.get(call_id)
        return perf.to_dict() if perf else None

    def finalize(self, call_id: str) -> Optional[dict[str, Any]]:
        """Release per-call state; keep a summary for aggregates."""
        self._timers.pop(call_id, None)
        perf = self._calls.pop(call_id, None)
        if perf is None:
            return None
        summary = perf.to_dict()
        self._history.append(CallSummary(
            call_id=call_id,
            customer_id=perf.customer_id,
            total_ms=perf.total_ms,
            transcription_ms=perf.stage_ms(Stage.TRANSCRIPTION.value),
            evaluation_ms=perf.stage_ms(Stage.EVALUATION.value),
            finished_at=datetime.now(timezone.utc),
        ))
        logger.info(
            "call_performance",
            call_id=call_id,
            total_ms=summary["totalDuration"],
            transcription_ms=summary["transcriptionDuration"],
            evaluation_ms=summary["evaluationDuration"],
            api_calls=perf.external_calls.count,
            api_avg_ms=round(perf.external_calls.avg_ms, 1),
            storage_ops=perf.storage_ops.count,
        )
        return summary

    def aggregate(
        self,
        customer_id: str = "",
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        rows = [
            s for s in self._history
            if (not customer_id or s.customer_id == customer_id)
            and (date_from is None or s.finished_at >= date_from)
            and (date_to is None or s.finished_at <= date_to)
        ]
        durations = [s.total_ms for s in rows]
        transcription = [s.transcription_ms for s in rows if s.transcription_ms > 0]
        evaluation = [s.evaluation_ms for s in rows if s.evaluation_ms > 0]

        def _avg(values: list[float]) -> float:
            return round(sum(values) / len(values), 1) if values else 0.0

        return {
            "totalCalls": len(rows),
            "averageProcessingTime": _avg(durations),
            "averageTranscriptionTime": _avg(transcription),
            "averageEvaluationTime": _avg(evaluation),
            "p50": round(percentile(durations, 50), 1),
            "p95": round(percentile(durations, 95), 1),
            "p99": round(percentile(durations, 99), 1),
        }

    def clear(self, call_id: str = "") -> None:
        if call_id:
            self._calls.pop(call_id, None)
            self._timers.pop(call_id, None)
            return
        self._calls.clear()
        self._timers.clear()
        self._history.clear()

    @property
    def active_calls(self) -> int:
        return len(self._calls)
