"""
Call Service — ingestion and queries over uploaded call records.

upload() answers immediately; evaluation continues in the background on
the CallProcessor.
"""
from __future__ import annotations

import time
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseRecordStore, NotFoundError
from evaluation.performance import PerformanceMonitor
from evaluation.pipeline import CallProcessor
from models.schemas import CALL_PROGRESS, CallMetadata, CallRecord, CallStatus, Grade
from storage.content_store import AUDIO_EXTENSIONS, ContentStore, content_hash, extension_of

logger = structlog.get_logger()

MAX_BULK_FILES = 50
METRIC_NAMES = ("latency", "interruption", "pronunciation", "repetition",
                "disconnection", "jobs_to_be_done")


def validate_audio_file(file_name: str, data: bytes) -> str:
    """Returns the extension; raises ValueError for anything unusable."""
    if not data:
        raise ValueError("Invalid input: audio file is required")
    ext = extension_of(file_name, default="")
    if ext not in AUDIO_EXTENSIONS:
        raise ValueError(
            f"Invalid file type '{ext or file_name}'. Supported: {', '.join(AUDIO_EXTENSIONS)}"
        )
    return ext


class CallService:

    def __init__(self, store: BaseRecordStore, content: ContentStore,
                 processor: CallProcessor, monitor: PerformanceMonitor):
        self.store = store
        self.content = content
        self.processor = processor
        self.monitor = monitor

    # ── Ingestion ─────────────────────────────────────────────

    async def upload(
        self,
        data: bytes,
        file_name: str,
        customer_id: str = "default-customer",
        metadata: Optional[CallMetadata] = None,
    ) -> dict[str, Any]:
        ext = validate_audio_file(file_name, data)
        record = CallRecord(
            customer_id=customer_id,
            file_name=file_name,
            file_size=len(data),
            audio_hash=content_hash(data),
            status=CallStatus.UPLOADING,
            progress=CALL_PROGRESS[CallStatus.UPLOADING],
            metadata=metadata or CallMetadata(),
        )
        await self.store.create_call(record)

        started = time.monotonic()
        try:
            ref = await self.content.save(customer_id, record.id, data, ext)
        except Exception:
            await self.store.delete_call(record.id)
            raise
        self.monitor.record_storage_op(record.id, (time.monotonic() - started) * 1000)

        record = await self.store.update_call(
            record.id, audio_ref=ref, status=CallStatus.PENDING,
            progress=CALL_PROGRESS[CallStatus.PENDING],
        )
        self.processor.schedule(record.id)
        logger.info("call_uploaded", call_id=record.id, customer_id=customer_id,
                    file_name=file_name, bytes=len(data))
        return {
            "callId": record.id,
            "status": record.status.value,
            "uploadedAt": record.created_at.isoformat(),
            "estimatedProcessingTime": "5-10 minutes",
        }

    async def bulk_upload(
        self,
        files: list[tuple[str, bytes]],
        customer_id: str = "default-customer",
        metadata: Optional[CallMetadata] = None,
    ) -> dict[str, Any]:
        if not files:
            raise ValueError("Invalid input: at least one file is required")
        if len(files) > MAX_BULK_FILES:
            raise ValueError(f"Invalid input: maximum {MAX_BULK_FILES} files per batch")

        batch_id = f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        accepted, rejections = [], []
        for file_name, data in files:
            try:
                accepted.append(await self.upload(data, file_name, customer_id,
                                                  metadata.model_copy() if metadata else None))
            except Exception as e:
                logger.warning("bulk_upload_rejected", batch_id=batch_id, file_name=file_name,
                               error=str(e))
                rejections.append({"fileName": file_name, "reason": str(e) or "Unknown error"})

        return {
            "batchId": batch_id,
            "totalCalls": len(files),
            "acceptedCalls": len(accepted),
            "rejectedCalls": len(rejections),
            "rejections": rejections,
            "calls": accepted,
        }

    # ── Queries ───────────────────────────────────────────────

    async def get(self, call_id: str, customer_id: str = "") -> CallRecord:
        record = await self.store.get_call(call_id)
        if record is None or record.is_deleted or (customer_id and record.customer_id != customer_id):
            raise NotFoundError(f"Call {call_id} not found")
        return record

    async def list(
        self,
        customer_id: str = "",
        agent_id: str = "",
        status: Optional[CallStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        records = await self.store.list_calls(customer_id, agent_id, status, date_from, date_to)
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        start = (page - 1) * limit
        return {
            "calls": records[start:start + limit],
            "total": len(records),
            "page": page,
            "limit": limit,
        }

    async def bulk_status(self, call_ids: list[str]) -> list[dict[str, Any]]:
        statuses = []
        for call_id in call_ids:
            record = await self.store.get_call(call_id)
            if record is None or record.is_deleted:
                statuses.append({"callId": call_id, "status": "not_found"})
                continue
            statuses.append({
                "callId": call_id,
                "status": record.status.value,
                "progress": record.progress,
                "overallScore": record.evaluation.overall_score if record.evaluation else None,
                "error": record.error,
            })
        return statuses

    async def get_audio(self, call_id: str, customer_id: str = "") -> tuple[bytes, str]:
        record = await self.get(call_id, customer_id)
        return await self.content.read(record.audio_ref), record.file_name

    # ── Mutations ─────────────────────────────────────────────

    async def update_metadata(self, call_id: str, fields: dict[str, Any]) -> CallRecord:
        record = await self.get(call_id)
        merged = record.metadata.model_dump()
        for key, value in fields.items():
            if key == "custom_fields" and isinstance(value, dict):
                merged["custom_fields"] = {**merged.get("custom_fields", {}), **value}
            elif key in merged:
                merged[key] = value
        return await self.store.update_call(call_id, metadata=CallMetadata.model_validate(merged))

    async def delete(self, call_id: str, permanent: bool = False) -> None:
        record = await self.store.get_call(call_id)
        if record is None or (record.is_deleted and not permanent):
            raise NotFoundError(f"Call {call_id} not found")

        if self.processor.is_running(call_id):
            await self.processor.cancel(call_id)

        if not permanent:
            await self.store.update_call(call_id, deleted_at=datetime.now(timezone.utc))
            logger.info("call_soft_deleted", call_id=call_id)
            return

        if record.audio_ref:
            await self.content.delete(record.audio_ref)
        await self.store.delete_call(call_id)
        logger.info("call_deleted", call_id=call_id)

    # ── Analytics ─────────────────────────────────────────────

    async def analytics(
        self,
        customer_id: str = "",
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        records = await self.store.list_calls(customer_id, date_from=date_from, date_to=date_to)
        completed = [r for r in records if r.status == CallStatus.COMPLETED and r.evaluation]

        status_distribution: dict[str, int] = {}
        for r in records:
            status_distribution[r.status.value] = status_distribution.get(r.status.value, 0) + 1

        grade_distribution = {g.value: 0 for g in Grade}
        for r in completed:
            grade_distribution[r.evaluation.grade.value] += 1

        scores = [r.evaluation.overall_score for r in completed]
        metric_averages = {}
        for name in METRIC_NAMES:
            values = [r.evaluation.metric_scores()[name] for r in completed]
            if values:
                metric_averages[name] = round(sum(values) / len(values), 2)

        daily: dict[str, dict[str, Any]] = {}
        for r in records:
            day = r.created_at.date().isoformat()
            bucket = daily.setdefault(day, {"date": day, "total": 0, "completed": 0, "scores": []})
            bucket["total"] += 1
            if r.status == CallStatus.COMPLETED and r.evaluation:
                bucket["completed"] += 1
                bucket["scores"].append(r.evaluation.overall_score)
        trends = []
        for day in sorted(daily):
            bucket = daily[day]
            bucket_scores = bucket.pop("scores")
            bucket["averageScore"] = round(sum(bucket_scores) / len(bucket_scores), 2) if bucket_scores else 0
            trends.append(bucket)

        return {
            "period": {
                "from": date_from.isoformat() if date_from else None,
                "to": date_to.isoformat() if date_to else None,
            },
            "summary": {
                "totalCalls": len(records),
                "completedCalls": len(completed),
                "totalDuration": sum(r.duration for r in completed),
                "averageOverallScore": round(sum(scores) / len(scores), 2) if scores else 0,
                "statusDistribution": status_distribution,
                "scoreDistribution": grade_distribution,
            },
            "metricAverages": metric_averages,
            "dailyTrends": trends,
        }
