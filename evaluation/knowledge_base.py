"""
Knowledge base service — per-agent expected jobs used by the
jobs-to-be-done metric.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseRecordStore, NotFoundError
from models.schemas import ExpectedJob, KnowledgeBaseEntry

logger = structlog.get_logger()


class KnowledgeBaseService:

    def __init__(self, store: BaseRecordStore):
        self.store = store

    async def create_or_update(
        self,
        agent_id: str,
        customer_id: str = "default-customer",
        expected_jobs: Optional[list[ExpectedJob]] = None,
        language: str = "ar",
        notes: str = "",
    ) -> KnowledgeBaseEntry:
        if not agent_id:
            raise ValueError("Invalid input: agent_id is required")

        existing = await self.store.get_knowledge_base(agent_id)
        entry = KnowledgeBaseEntry(
            agent_id=agent_id,
            customer_id=customer_id,
            expected_jobs=expected_jobs or [],
            language=language,
            notes=notes,
            created_at=existing.created_at if existing else datetime.now(timezone.utc),
        )
        saved = await self.store.upsert_knowledge_base(entry)
        logger.info("knowledge_base_saved", agent_id=agent_id, jobs=len(saved.expected_jobs),
                    created=existing is None)
        return saved

    async def find_by_agent(self, agent_id: str) -> Optional[KnowledgeBaseEntry]:
        return await self.store.get_knowledge_base(agent_id)

    async def find_by_customer(self, customer_id: str) -> list[KnowledgeBaseEntry]:
        return await self.store.list_knowledge_bases(customer_id)

    async def _require(self, agent_id: str) -> KnowledgeBaseEntry:
        entry = await self.store.get_knowledge_base(agent_id)
        if entry is None:
            raise NotFoundError(f"Knowledge base for agent {agent_id} not found")
        return entry

    async def delete(self, agent_id: str) -> None:
        await self._require(agent_id)
        await self.store.delete_knowledge_base(agent_id)
        logger.info("knowledge_base_deleted", agent_id=agent_id)

    async def add_job(self, agent_id: str, job: ExpectedJob) -> KnowledgeBaseEntry:
        """Adds the job, replacing any existing job with the same id."""
        entry = await self._require(agent_id)
        jobs = [j for j in entry.expected_jobs if j.id != job.id] + [job]
        return await self.store.upsert_knowledge_base(
            entry.model_copy(update={"expected_jobs": jobs, "updated_at": datetime.now(timezone.utc)})
        )

    async def remove_job(self, agent_id: str, job_id: str) -> KnowledgeBaseEntry:
        entry = await self._require(agent_id)
        jobs = [j for j in entry.expected_jobs if j.id != job_id]
        if len(jobs) == len(entry.expected_jobs):
            raise NotFoundError(f"Job {job_id} not found for agent {agent_id}")
        return await self.store.upsert_knowledge_base(
            entry.model_copy(update={"expected_jobs": jobs, "updated_at": datetime.now(timezone.utc)})
        )
