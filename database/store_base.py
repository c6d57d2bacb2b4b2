"""
Abstract Record Store — Interface for all storage backends.

Implementations:
  - InMemoryRecordStore (dict-based, single-process, no persistence)

Holds call records, conversation runs and agent knowledge bases. Every
mutation of a single record is serialized (one writer per record id), and
runs support wait-for-condition so a driving loop can block on changes
delivered by an independent callback.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from models.schemas import (
    CallRecord, CallStatus, ConversationRun, KnowledgeBaseEntry, TranscriptEntry,
)


class NotFoundError(LookupError):
    """Raised when a record id does not resolve."""


class BaseRecordStore(ABC):
    """Interface that all record store backends must implement."""

    # ── Calls ─────────────────────────────────────────────────

    @abstractmethod
    async def create_call(self, record: CallRecord) -> CallRecord:
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def update_call(self, call_id: str, **fields: Any) -> CallRecord:
        ...

    @abstractmethod
    async def list_calls(
        self,
        customer_id: str = "",
        agent_id: str = "",
        status: Optional[CallStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> list[CallRecord]:
        ...

    @abstractmethod
    async def delete_call(self, call_id: str) -> bool:
        ...

    # ── Conversation runs ─────────────────────────────────────

    @abstractmethod
    async def create_run(self, run: ConversationRun) -> ConversationRun:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[ConversationRun]:
        ...

    @abstractmethod
    async def update_run(self, run_id: str, **fields: Any) -> ConversationRun:
        ...

    @abstractmethod
    async def append_run_transcript(self, run_id: str, entry: TranscriptEntry,
                                    unique_audio_url: bool = False) -> Optional[ConversationRun]:
        """Append in arrival order. With unique_audio_url, None if the audio is already present."""
        ...

    @abstractmethod
    async def find_run_by_call_sid(self, call_sid: str) -> Optional[ConversationRun]:
        ...

    @abstractmethod
    async def list_runs(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[ConversationRun]:
        ...

    @abstractmethod
    async def wait_for_run(
        self,
        run_id: str,
        predicate: Callable[[ConversationRun], bool],
        timeout: float,
    ) -> Optional[ConversationRun]:
        """Block until predicate(run) holds; None on timeout."""
        ...

    # ── Knowledge bases ───────────────────────────────────────

    @abstractmethod
    async def get_knowledge_base(self, agent_id: str) -> Optional[KnowledgeBaseEntry]:
        ...

    @abstractmethod
    async def upsert_knowledge_base(self, entry: KnowledgeBaseEntry) -> KnowledgeBaseEntry:
        ...

    @abstractmethod
    async def list_knowledge_bases(self, customer_id: str = "") -> list[KnowledgeBaseEntry]:
        ...

    @abstractmethod
    async def delete_knowledge_base(self, agent_id: str) -> bool:
        ...
