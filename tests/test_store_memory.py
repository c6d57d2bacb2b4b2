"""
Tests for InMemoryRecordStore and the knowledge base service built on it.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from database.store_base import NotFoundError
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryRecordStore
from evaluation.knowledge_base import KnowledgeBaseService
from models.schemas import (
    CallRecord, CallStatus, ConversationRun, ExpectedJob, KnowledgeBaseEntry, RunConfig, Speaker,
    TranscriptEntry,
)


def _run() -> ConversationRun:
    return ConversationRun(config=RunConfig(agent_endpoint="+201001234567"))


# ══════════════════════════════════════════════════════════════
#  Calls
# ══════════════════════════════════════════════════════════════

class TestCallRecords:

    @pytest.mark.asyncio
    async def test_create_get_update(self, store):
        record = await store.create_call(CallRecord(file_name="a.mp3"))
        updated = await store.update_call(record.id, status=CallStatus.PROCESSING, progress=20)
        assert updated.status == CallStatus.PROCESSING
        assert updated.updated_at >= record.updated_at
        assert (await store.get_call(record.id)).progress == 20

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        record = await store.create_call(CallRecord(file_name="a.mp3"))
        fetched = await store.get_call(record.id)
        fetched.metadata.agent_id = "mutated"
        assert (await store.get_call(record.id)).metadata.agent_id == ""

    @pytest.mark.asyncio
    async def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.update_call("nope", progress=1)

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        now = datetime.now(timezone.utc)
        old = CallRecord(customer_id="c1", created_at=now - timedelta(days=3))
        new = CallRecord(customer_id="c1")
        other = CallRecord(customer_id="c2")
        gone = CallRecord(customer_id="c1", deleted_at=now)
        for r in (old, new, other, gone):
            await store.create_call(r)

        assert [r.id for r in await store.list_calls("c1")] == [new.id, old.id]
        assert [r.id for r in await store.list_calls("c1", date_from=now - timedelta(days=1))] == [new.id]
        assert len(await store.list_calls("c1", include_deleted=True)) == 3
        assert await store.delete_call(other.id) is True
        assert await store.delete_call(other.id) is False


# ══════════════════════════════════════════════════════════════
#  Conversation runs
# ══════════════════════════════════════════════════════════════

class TestConversationRuns:

    @pytest.mark.asyncio
    async def test_wait_for_run_times_out(self, store):
        run = await store.create_run(_run())
        assert await store.wait_for_run(run.id, lambda r: bool(r.transcripts), 0.05) is None

    @pytest.mark.asyncio
    async def test_wait_for_run_wakes_on_append(self, store):
        run = await store.create_run(_run())

        async def reply_later():
            await asyncio.sleep(0.02)
            await store.append_run_transcript(run.id, TranscriptEntry(speaker=Speaker.AGENT, message="hi"))

        waiter = asyncio.create_task(store.wait_for_run(
            run.id, lambda r: any(t.speaker == Speaker.AGENT for t in r.transcripts), 1.0,
        ))
        await reply_later()
        result = await waiter
        assert result is not None
        assert result.transcripts[-1].message == "hi"

    @pytest.mark.asyncio
    async def test_already_satisfied(self, store):
        run = await store.create_run(_run())
        assert await store.wait_for_run(run.id, lambda r: True, 0.01) is not None

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_not_lost(self, store):
        run = await store.create_run(_run())
        await asyncio.gather(*[
            store.append_run_transcript(run.id, TranscriptEntry(message=f"m{i}")) for i in range(20)
        ])
        assert len((await store.get_run(run.id)).transcripts) == 20

    @pytest.mark.asyncio
    async def test_unique_audio_url_append(self, store):
        run = await store.create_run(_run())
        url = "https://api.twilio.com/rec/RE1"
        results = await asyncio.gather(*[
            store.append_run_transcript(
                run.id, TranscriptEntry(speaker=Speaker.AGENT, message="hi", audio_url=url),
                unique_audio_url=True,
            )
            for _ in range(5)
        ])
        assert sum(1 for r in results if r is not None) == 1
        assert [t.audio_url for t in (await store.get_run(run.id)).transcripts] == [url]

        # entries without audio are never treated as duplicates
        for _ in range(2):
            assert await store.append_run_transcript(
                run.id, TranscriptEntry(message="no audio"), unique_audio_url=True,
            ) is not None
        assert len((await store.get_run(run.id)).transcripts) == 3

    @pytest.mark.asyncio
    async def test_find_by_call_sid(self, store):
        run = await store.create_run(_run())
        assert await store.find_run_by_call_sid("CA1") is None
        await store.update_run(run.id, call=run.call.model_copy(update={"call_sid": "CA1"}))
        assert (await store.find_run_by_call_sid("CA1")).id == run.id


# ══════════════════════════════════════════════════════════════
#  Knowledge bases
# ══════════════════════════════════════════════════════════════

class TestKnowledgeBaseService:

    @pytest.fixture
    def kb(self, store) -> KnowledgeBaseService:
        return KnowledgeBaseService(store)

    @pytest.mark.asyncio
    async def test_create_requires_agent(self, kb):
        with pytest.raises(ValueError, match="agent_id is required"):
            await kb.create_or_update("")

    @pytest.mark.asyncio
    async def test_update_keeps_created_at(self, kb):
        first = await kb.create_or_update("agent-1", "c1", language="en")
        await asyncio.sleep(0.001)
        second = await kb.create_or_update("agent-1", "c1", language="ar", notes="v2")
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert (await kb.find_by_agent("agent-1")).notes == "v2"

    @pytest.mark.asyncio
    async def test_jobs_upsert_and_remove(self, kb):
        await kb.create_or_update("agent-1", "c1")
        await kb.add_job("agent-1", ExpectedJob(id="refund", name="Refund"))
        entry = await kb.add_job("agent-1", ExpectedJob(id="refund", name="Refund v2",
                                                        required_steps=["verify identity"]))
        assert [j.name for j in entry.expected_jobs] == ["Refund v2"]

        entry = await kb.remove_job("agent-1", "refund")
        assert entry.expected_jobs == []
        with pytest.raises(NotFoundError):
            await kb.remove_job("agent-1", "refund")

    @pytest.mark.asyncio
    async def test_find_by_customer_and_delete(self, kb):
        await kb.create_or_update("agent-1", "c1")
        await kb.create_or_update("agent-2", "c2")
        assert [e.agent_id for e in await kb.find_by_customer("c1")] == ["agent-1"]

        await kb.delete("agent-1")
        assert await kb.find_by_agent("agent-1") is None
        with pytest.raises(NotFoundError):
            await kb.delete("agent-1")
        with pytest.raises(NotFoundError):
            await kb.add_job("agent-1", ExpectedJob(id="x", name="x"))

    @pytest.mark.asyncio
    async def test_store_upsert_preserves_created_at(self, store):
        first = await store.upsert_knowledge_base(KnowledgeBaseEntry(agent_id="a"))
        second = await store.upsert_knowledge_base(KnowledgeBaseEntry(
            agent_id="a", created_at=first.created_at + timedelta(days=1),
        ))
        assert second.created_at == first.created_at


# ══════════════════════════════════════════════════════════════
#  Store factory
# ══════════════════════════════════════════════════════════════

class TestStoreFactory:

    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_singleton(self):
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryRecordStore)
        assert get_store() is store

    def test_unsupported_backend(self):
        with pytest.raises(ValueError, match="Unsupported store backend"):
            create_store({"store_backend": "postgres"})
