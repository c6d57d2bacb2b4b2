"""
InMemoryRecordStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - One asyncio.Condition per record id: its lock serializes writers on
    that record, its notify wakes anyone waiting on a change
  - Returns copies, so callers never mutate stored state outside a lock
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseRecordStore, NotFoundError
from models.schemas import (
    CallRecord, CallStatus, ConversationRun, KnowledgeBaseEntry, TranscriptEntry,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRecordStore(BaseRecordStore):

    def __init__(self):
        self._calls: dict[str, CallRecord] = {}
        self._runs: dict[str, ConversationRun] = {}
        self._knowledge: dict[str, KnowledgeBaseEntry] = {}     # agent_id → entry
        self._call_sid_index: dict[str, str] = {}               # call_sid → run_id
        self._conditions: dict[str, asyncio.Condition] = {}     # "kind:id" → condition
        logger.info("inmemory_store_initialized")

    def _condition(self, key: str) -> asyncio.Condition:
        cond = self._conditions.get(key)
        if cond is None:
            cond = asyncio.Condition()
            self._conditions[key] = cond
        return cond

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, record: CallRecord) -> CallRecord:
        async with self._condition(f"call:{record.id}"):
            self._calls[record.id] = record.model_copy(deep=True)
        return record

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        record = self._calls.get(call_id)
        return record.model_copy(deep=True) if record else None

    async def update_call(self, call_id: str, **fields: Any) -> CallRecord:
        cond = self._condition(f"call:{call_id}")
        async with cond:
            current = self._calls.get(call_id)
            if current is None:
                raise NotFoundError(f"Call {call_id} not found")
            updated = current.model_copy(update={**fields, "updated_at": _utcnow()}, deep=True)
            self._calls[call_id] = updated
            cond.notify_all()
        return updated.model_copy(deep=True)

    async def list_calls(
        self,
        customer_id: str = "",
        agent_id: str = "",
        status: Optional[CallStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> list[CallRecord]:
        results = []
        for record in self._calls.values():
            if record.is_deleted and not include_deleted:
                continue
            if customer_id and record.customer_id != customer_id:
                continue
            if agent_id and record.metadata.agent_id != agent_id:
                continue
            if status and record.status != status:
                continue
            if date_from and record.created_at < date_from:
                continue
            if date_to and record.created_at > date_to:
                continue
            results.append(record.model_copy(deep=True))
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results

    async def delete_call(self, call_id: str) -> bool:
        async with self._condition(f"call:{call_id}"):
            removed = self._calls.pop(call_id, None) is not None
        self._conditions.pop(f"call:{call_id}", None)
        return removed

    # ── Conversation runs ─────────────────────────────────

    async def create_run(self, run: ConversationRun) -> ConversationRun:
        async with self._condition(f"run:{run.id}"):
            self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get_run(self, run_id: str) -> Optional[ConversationRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_run(self, run_id: str, **fields: Any) -> ConversationRun:
        cond = self._condition(f"run:{run_id}")
        async with cond:
            current = self._runs.get(run_id)
            if current is None:
                raise NotFoundError(f"Run {run_id} not found")
            updated = current.model_copy(update=fields, deep=True)
            self._runs[run_id] = updated
            if updated.call.call_sid:
                self._call_sid_index[updated.call.call_sid] = run_id
            cond.notify_all()
        return updated.model_copy(deep=True)

    async def append_run_transcript(self, run_id: str, entry: TranscriptEntry,
                                    unique_audio_url: bool = False) -> Optional[ConversationRun]:
        cond = self._condition(f"run:{run_id}")
        async with cond:
            current = self._runs.get(run_id)
            if current is None:
                raise NotFoundError(f"Run {run_id} not found")
            if unique_audio_url and entry.audio_url and any(
                t.audio_url == entry.audio_url for t in current.transcripts
            ):
                logger.debug("run_transcript_duplicate_audio", run_id=run_id, url=entry.audio_url)
                return None
            updated = current.model_copy(
                update={"transcripts": [*current.transcripts, entry]}, deep=True,
            )
            self._runs[run_id] = updated
            cond.notify_all()
        return updated.model_copy(deep=True)

    async def find_run_by_call_sid(self, call_sid: str) -> Optional[ConversationRun]:
        run_id = self._call_sid_index.get(call_sid)
        return await self.get_run(run_id) if run_id else None

    async def list_runs(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[ConversationRun]:
        runs = [
            r.model_copy(deep=True) for r in self._runs.values()
            if not (date_from and r.created_at < date_from)
            and not (date_to and r.created_at > date_to)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs

    async def wait_for_run(
        self,
        run_id: str,
        predicate: Callable[[ConversationRun], bool],
        timeout: float,
    ) -> Optional[ConversationRun]:
        cond = self._condition(f"run:{run_id}")

        def _check() -> bool:
            run = self._runs.get(run_id)
            return run is not None and predicate(run)

        async with cond:
            try:
                await asyncio.wait_for(cond.wait_for(_check), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            return self._runs[run_id].model_copy(deep=True)

    # ── Knowledge bases ───────────────────────────────────

    async def get_knowledge_base(self, agent_id: str) -> Optional[KnowledgeBaseEntry]:
        entry = self._knowledge.get(agent_id)
        return entry.model_copy(deep=True) if entry else None

    async def upsert_knowledge_base(self, entry: KnowledgeBaseEntry) -> KnowledgeBaseEntry:
        async with self._condition(f"kb:{entry.agent_id}"):
            existing = self._knowledge.get(entry.agent_id)
            if existing is not None:
                entry = entry.model_copy(update={
                    "created_at": existing.created_at, "updated_at": _utcnow(),
                })
            self._knowledge[entry.agent_id] = entry.model_copy(deep=True)
        return entry

    async def list_knowledge_bases(self, customer_id: str = "") -> list[KnowledgeBaseEntry]:
        return [
            e.model_copy(deep=True) for e in self._knowledge.values()
            if not customer_id or e.customer_id == customer_id
        ]

    async def delete_knowledge_base(self, agent_id: str) -> bool:
        async with self._condition(f"kb:{agent_id}"):
            return self._knowledge.pop(agent_id, None) is not None
