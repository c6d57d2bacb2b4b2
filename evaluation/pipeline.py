"""
Call Processor — the asynchronous evaluation pipeline for uploaded calls.

    pending → processing → transcribing → evaluating → completed
                                                    ↘ failed

Each call runs as its own background task, detached from the request
that created it. A failure is classified once and stored on the record
as a structured payload; nothing is retried automatically. retry() is
the operator path back to pending. cancel() marks the call failed and
cancels its task, so in-flight provider calls are abandoned and their
results never written.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseRecordStore, NotFoundError
from evaluation.cache import ContentCache, evaluation_key
from evaluation.errors import ErrorClassifier
from evaluation.performance import PerformanceMonitor, Stage
from evaluation.scoring import Evaluator
from evaluation.transcription import TranscriptionService
from models.schemas import CALL_PROGRESS, CallRecord, CallStatus, WebhookEvent
from notifications.webhooks import WebhookDispatcher
from storage.content_store import ContentStore, mime_type_for

logger = structlog.get_logger()

CANCELLED_MESSAGE = "Processing cancelled by operator"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallProcessor:

    def __init__(
        self,
        store: BaseRecordStore,
        content: ContentStore,
        transcription: TranscriptionService,
        evaluator: Evaluator,
        cache: ContentCache,
        monitor: PerformanceMonitor,
        classifier: ErrorClassifier,
        webhooks: WebhookDispatcher,
        evaluation_ttl: float = 7 * 24 * 3600,
    ):
        self.store = store
        self.content = content
        self.transcription = transcription
        self.evaluator = evaluator
        self.cache = cache
        self.monitor = monitor
        self.classifier = classifier
        self.webhooks = webhooks
        self.evaluation_ttl = evaluation_ttl
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Scheduling ────────────────────────────────────────────

    def schedule(self, call_id: str) -> asyncio.Task:
        existing = self._tasks.get(call_id)
        if existing and not existing.done():
            return existing
        task = asyncio.create_task(self.process_call(call_id), name=f"process_call_{call_id}")
        self._tasks[call_id] = task
        task.add_done_callback(lambda t: self._tasks.pop(call_id, None) if self._tasks.get(call_id) is t else None)
        return task

    def is_running(self, call_id: str) -> bool:
        task = self._tasks.get(call_id)
        return task is not None and not task.done()

    async def wait(self, call_id: str) -> None:
        """Block until the call's background task (if any) finishes."""
        task = self._tasks.get(call_id)
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Pipeline ──────────────────────────────────────────────

    async def _set_status(self, call_id: str, status: CallStatus, **fields) -> CallRecord:
        record = await self.store.update_call(
            call_id, status=status, progress=CALL_PROGRESS[status], **fields,
        )
        logger.info("call_stage_changed", call_id=call_id, status=status.value,
                    progress=CALL_PROGRESS[status])
        return record

    async def process_call(self, call_id: str) -> None:
        record = await self.store.get_call(call_id)
        if record is None:
            raise NotFoundError(f"Call {call_id} not found")

        started_at = _utcnow()
        clock = time.monotonic()
        try:
            await self._set_status(call_id, CallStatus.PROCESSING, processing_started_at=started_at)

            self.monitor.start_stage(call_id, Stage.TRANSCRIPTION.value, record.customer_id)
            await self._set_status(call_id, CallStatus.TRANSCRIBING)
            await self._transcribe(record)
            self.monitor.end_stage(call_id, Stage.TRANSCRIPTION.value,
                                   {"fileName": record.file_name, "fileSize": record.file_size})

            self.monitor.start_stage(call_id, Stage.EVALUATION.value)
            record = await self._set_status(call_id, CallStatus.EVALUATING)
            await self._evaluate(record)
            self.monitor.end_stage(call_id, Stage.EVALUATION.value)

            final = await self._set_status(call_id, CallStatus.COMPLETED, processing_completed_at=_utcnow())
            self.monitor.finalize(call_id)
            logger.info("call_processing_completed", call_id=call_id,
                        duration_ms=round((time.monotonic() - clock) * 1000))

            evaluation = final.evaluation
            self.webhooks.notify(final.customer_id, WebhookEvent.CALL_COMPLETED, call_id, {
                "overallScore": evaluation.overall_score if evaluation else None,
                "grade": evaluation.grade.value if evaluation else None,
                "criticalIssues": [i.model_dump() for i in evaluation.critical_issues] if evaluation else [],
                "evaluation": evaluation.to_dict() if evaluation else None,
            })
        except asyncio.CancelledError:
            self.monitor.clear(call_id)
            logger.warning("call_processing_cancelled", call_id=call_id)
            raise
        except Exception as e:
            self.monitor.clear(call_id)
            await self._fail(record, e)

    async def _transcribe(self, record: CallRecord) -> None:
        if not record.audio_ref:
            raise ValueError("Invalid call record: audio file is required")

        storage_start = time.monotonic()
        audio = await self.content.read(record.audio_ref)
        self.monitor.record_storage_op(record.id, (time.monotonic() - storage_start) * 1000)
        if record.file_size and abs(len(audio) - record.file_size) > 1000:
            logger.warning("audio_size_mismatch", call_id=record.id,
                           loaded=len(audio), expected=record.file_size)

        language = "auto"
        if record.metadata.agent_id:
            kb = await self.store.get_knowledge_base(record.metadata.agent_id)
            if kb is not None and kb.language:
                language = kb.language

        outcome = await self.transcription.transcribe_call(
            record.id, audio, language, mime_type_for(record.file_name or record.audio_ref),
        )
        duration = outcome.transcripts[-1].end if outcome.transcripts else 0
        await self.store.update_call(record.id, transcripts=outcome.transcripts,
                                     language=outcome.language, duration=duration)

    async def _evaluate(self, record: CallRecord) -> None:
        kb = None
        if record.metadata.agent_id:
            try:
                kb = await self.store.get_knowledge_base(record.metadata.agent_id)
            except Exception as e:
                logger.warning("knowledge_base_lookup_failed", agent_id=record.metadata.agent_id,
                               error=str(e))
        result = await self.evaluator.evaluate(record.transcripts, kb)
        self.cache.set(evaluation_key(record.id), result.to_dict(), ttl=self.evaluation_ttl)
        await self.store.update_call(record.id, evaluation=result)

    async def _fail(self, record: CallRecord, error: BaseException) -> None:
        classified = self.classifier.classify(error)
        logger.error("call_processing_failed", call_id=record.id, kind=classified.kind.value,
                     error=classified.technical_message)
        try:
            await self._set_status(record.id, CallStatus.FAILED,
                                   error=classified.to_payload(record.retry_count))
        except NotFoundError:
            # permanently deleted while running
            return
        self.webhooks.notify(record.customer_id, WebhookEvent.CALL_FAILED, record.id, {
            "error": classified.user_message,
            "errorType": classified.kind.value,
            "retryable": classified.retryable,
            "status": CallStatus.FAILED.value,
        })

    # ── Operator paths ────────────────────────────────────────

    async def retry(self, call_id: str) -> CallRecord:
        record = await self.store.get_call(call_id)
        if record is None or record.is_deleted:
            raise NotFoundError(f"Call {call_id} not found")
        if record.status != CallStatus.FAILED:
            raise ValueError(f"Only failed calls can be retried (current status: {record.status.value})")

        updated = await self._set_status(
            call_id, CallStatus.PENDING,
            error=None,
            retry_count=record.retry_count + 1,
            last_retry_at=_utcnow(),
        )
        logger.info("call_retry_scheduled", call_id=call_id, retry_count=updated.retry_count)
        self.schedule(call_id)
        return updated

    async def cancel(self, call_id: str) -> CallRecord:
        record = await self.store.get_call(call_id)
        if record is None:
            raise NotFoundError(f"Call {call_id} not found")
        if record.status in (CallStatus.COMPLETED, CallStatus.FAILED):
            raise ValueError(f"Call {call_id} is already {record.status.value}")

        task = self._tasks.get(call_id)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        classified = self.classifier.classify(RuntimeError(CANCELLED_MESSAGE))
        payload = classified.to_payload(record.retry_count)
        payload["message"] = CANCELLED_MESSAGE
        return await self._set_status(call_id, CallStatus.FAILED, error=payload)
