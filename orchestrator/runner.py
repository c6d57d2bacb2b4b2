"""
Conversation Runner — drives a simulated caller against a live agent.

    pending → running → completed
                      ↘ failed

One background task per run. Each turn:
  1. the dialogue session produces the caller's next line (LLM)
  2. the line is synthesized (TTS) and published as audio the carrier
     fetches when it asks the voice webhook for instructions
  3. the line is appended to the run transcript as a customer entry
  4. the runner waits on the record store until the recording callback
     appends a new agent entry, or reply_timeout_s elapses

The agent's reply never comes back on the call itself: the carrier
posts a recording, process_agent_recording() transcribes it and appends
it to the same run. A timed-out turn gets a sentinel entry that is kept
in the transcript but never shown to the language model.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import OrchestratorConfig
from database.store_base import BaseRecordStore, NotFoundError
from evaluation.errors import ErrorClassifier
from evaluation.scoring import Evaluator
from evaluation.transcription import TranscriptionService
from models.schemas import (
    CallControl, ConversationRun, Grade, RunConfig, RunStatus, Speaker, TranscriptEntry,
)
from orchestrator.dialogue import ConversationEnded, DialogueSession, DialogueStrategy
from storage.content_store import UtteranceAudioStore
from voice.llm import LLMService
from voice.providers import Capability, ProviderError, ProviderRegistry

logger = structlog.get_logger()

NO_RESPONSE_SENTINEL = "[No response received - timeout]"
CANCELLED_MESSAGE = "Run cancelled by operator"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_sentinel(entry: TranscriptEntry) -> bool:
    return entry.message == NO_RESPONSE_SENTINEL


def _agent_count(run: ConversationRun) -> int:
    return sum(1 for t in run.transcripts if t.speaker == Speaker.AGENT)


class ConversationRunner:

    def __init__(
        self,
        store: BaseRecordStore,
        registry: ProviderRegistry,
        llm: LLMService,
        transcription: TranscriptionService,
        evaluator: Evaluator,
        audio: UtteranceAudioStore,
        config: OrchestratorConfig = None,
        public_base_url: str = "http://localhost:8000",
        llm_model: str = "",
        classifier: ErrorClassifier = None,
    ):
        self.store = store
        self.registry = registry
        self.llm = llm
        self.transcription = transcription
        self.evaluator = evaluator
        self.audio = audio
        self.config = config or OrchestratorConfig()
        self.public_base_url = public_base_url.rstrip("/")
        self.llm_model = llm_model
        self.classifier = classifier or ErrorClassifier()
        self._tasks: dict[str, asyncio.Task] = {}
        self._played: dict[str, int] = {}               # run_id → last turn handed to the carrier
        self._pending_recordings: set[str] = set()      # recording urls being transcribed

    # ── URLs ──────────────────────────────────────────────────

    def voice_webhook_url(self, run_id: str) -> str:
        return f"{self.public_base_url}/v1/telephony/webhook/voice?testRunId={run_id}"

    def recording_webhook_url(self) -> str:
        return f"{self.public_base_url}/v1/telephony/webhook/recording"

    def telephony(self):
        candidates = self.registry.select(Capability.TELEPHONY)
        if not candidates:
            raise ProviderError("No telephony provider configured", provider_specific=False)
        return candidates[0]

    # ── Lifecycle ─────────────────────────────────────────────

    async def create(self, config: RunConfig, customer_id: str = "default-customer") -> ConversationRun:
        if not config.agent_endpoint:
            raise ValueError("Invalid input: agent_endpoint is required")
        # fail fast on unsupported language/dialect
        DialogueStrategy(self.llm, config.language, config.dialect)

        run = await self.store.create_run(ConversationRun(customer_id=customer_id, config=config))
        task = asyncio.create_task(self.execute(run.id), name=f"conversation_run_{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda t: self._forget(run.id))
        logger.info("conversation_run_created", run_id=run.id, endpoint=config.agent_endpoint,
                    language=config.language, dialect=config.dialect)
        return run

    def _forget(self, run_id: str) -> None:
        self._tasks.pop(run_id, None)
        self._played.pop(run_id, None)
        self._release_audio(run_id)

    def _release_audio(self, run_id: str) -> None:
        # the call is over; nobody fetches this run's utterances any more
        released = self.audio.discard_run(run_id)
        if released:
            logger.debug("run_audio_released", run_id=run_id, files=released)

    def _error_payload(self, error: BaseException, message: str = "") -> dict[str, Any]:
        payload = self.classifier.classify(error).to_payload()
        if message:
            payload["message"] = message
        return payload

    async def get(self, run_id: str) -> ConversationRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Test run {run_id} not found")
        return run

    async def list(self, date_from: Optional[datetime] = None,
                   date_to: Optional[datetime] = None) -> list[ConversationRun]:
        return await self.store.list_runs(date_from, date_to)

    def is_running(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def wait(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel(self, run_id: str) -> ConversationRun:
        run = await self.get(run_id)
        if run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            raise ValueError(f"Test run {run_id} is already {run.status.value}")

        task = self._tasks.get(run_id)
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._release_audio(run_id)
        logger.warning("conversation_run_cancelled", run_id=run_id)
        error = self._error_payload(RuntimeError(CANCELLED_MESSAGE), CANCELLED_MESSAGE)
        return await self.store.update_run(run_id, status=RunStatus.FAILED,
                                           error=error, completed_at=_utcnow())

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Execution ─────────────────────────────────────────────

    async def execute(self, run_id: str) -> None:
        try:
            await self._execute(run_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = self._error_payload(e)
            logger.error("conversation_run_failed", run_id=run_id, kind=error["type"],
                         error=error["technicalMessage"])
            self._release_audio(run_id)
            try:
                await self.store.update_run(run_id, status=RunStatus.FAILED, error=error,
                                            completed_at=_utcnow())
            except NotFoundError:
                pass

    async def _execute(self, run_id: str) -> None:
        run = await self.store.update_run(run_id, status=RunStatus.RUNNING)
        cfg = run.config
        strategy = DialogueStrategy(self.llm, cfg.language, cfg.dialect, model=self.llm_model)
        session = DialogueSession(strategy, cfg.persona, cfg.scenario,
                                  max_turns=min(cfg.max_turns, self.config.max_turns))

        telephony = self.telephony()
        call = await telephony.place_call(cfg.agent_endpoint, self.voice_webhook_url(run_id), run_id)
        run = await self.store.update_run(run_id, call=CallControl(
            call_sid=call.get("sid", ""), status=call.get("status", ""), started_at=_utcnow(),
        ))
        logger.info("conversation_call_placed", run_id=run_id, call_sid=run.call.call_sid,
                    status=run.call.status)

        await asyncio.sleep(self.config.call_settle_s)

        turn = 0
        while turn < session.max_turns and not session.should_end():
            turn += 1
            try:
                reply = await self._run_turn(run_id, session, turn)
            except ConversationEnded:
                break
            except Exception as e:
                # LLM or TTS outage; the next turn may still succeed
                logger.error("conversation_turn_failed", run_id=run_id, turn=turn, error=str(e))
                continue

            if reply is not None:
                session.add_agent_utterance(reply)
            if session.should_end():
                logger.info("conversation_end_detected", run_id=run_id, turn=turn)
                break
            await asyncio.sleep(self.config.turn_pause_s)

        await self._hangup(run_id)
        self._release_audio(run_id)
        run = await self.store.update_run(run_id, status=RunStatus.COMPLETED, completed_at=_utcnow())
        logger.info("conversation_run_completed", run_id=run_id, turns=turn,
                    entries=len(run.transcripts))
        await self._evaluate(run)

    async def _run_turn(self, run_id: str, session: DialogueSession, turn: int) -> Optional[str]:
        """One caller utterance and the wait for the agent's reply. None on timeout."""
        text = await session.generate_response()
        run = await self.get(run_id)
        logger.info("caller_utterance", run_id=run_id, turn=turn, text=text)

        audio, _ = await self.registry.call(
            Capability.TTS, run.config.language,
            lambda p, kw: p.synthesize(**kw),
            {"text": text, "language": run.config.language},
        )
        audio_url = self.audio.put(f"dh-{run_id}-{turn}", audio)

        run = await self.store.update_run(run_id, metadata={
            **run.metadata,
            "currentTurn": turn,
            "currentAudioUrl": audio_url,
            "waitingForRecording": True,
        })
        agents_before = _agent_count(run)
        await self.store.append_run_transcript(run_id, TranscriptEntry(
            speaker=Speaker.CUSTOMER, message=text, timestamp=self._offset_ms(run),
            language=run.config.language, audio_url=audio_url, confidence=1.0,
        ))

        answered = await self.store.wait_for_run(
            run_id, lambda r: _agent_count(r) > agents_before, self.config.reply_timeout_s,
        )

        run = await self.get(run_id)
        await self.store.update_run(run_id, metadata={**run.metadata, "waitingForRecording": False})
        if answered is None:
            logger.warning("agent_reply_timeout", run_id=run_id, turn=turn,
                           timeout_s=self.config.reply_timeout_s)
            await self.store.append_run_transcript(run_id, TranscriptEntry(
                speaker=Speaker.AGENT, message=NO_RESPONSE_SENTINEL,
                timestamp=self._offset_ms(run), confidence=0.0,
            ))
            return None

        reply = [t for t in answered.transcripts if t.speaker == Speaker.AGENT][-1].message
        logger.info("agent_reply_received", run_id=run_id, turn=turn, text=reply)
        return reply

    async def _hangup(self, run_id: str) -> None:
        run = await self.get(run_id)
        if not run.call.call_sid:
            return
        try:
            telephony = self.telephony()
            if not getattr(telephony, "simulate", False):
                await telephony.hangup(run.call.call_sid)
        except Exception as e:
            logger.warning("conversation_hangup_failed", run_id=run_id, error=str(e))
        await self.store.update_run(run_id, call=run.call.model_copy(
            update={"status": "completed", "ended_at": _utcnow()},
        ))

    async def _evaluate(self, run: ConversationRun) -> None:
        transcripts = [t for t in run.transcripts if not is_sentinel(t)]
        kb = None
        if run.config.agent_id:
            kb = await self.store.get_knowledge_base(run.config.agent_id)
        try:
            result = await self.evaluator.evaluate(transcripts, kb)
        except Exception as e:
            logger.error("conversation_evaluation_failed", run_id=run.id, error=str(e))
            await self.store.update_run(
                run.id, error=self._error_payload(RuntimeError(f"Evaluation failed: {e}")),
            )
            return
        await self.store.update_run(run.id, evaluation=result)

    @staticmethod
    def _offset_ms(run: ConversationRun) -> int:
        start = run.call.started_at or run.created_at
        return max(0, round((_utcnow() - start).total_seconds() * 1000))

    # ── Carrier callbacks ─────────────────────────────────────

    async def voice_instructions(self, run_id: str) -> str:
        """
        Call-control XML for the carrier's voice webhook.

        Each turn's utterance is handed out once: play it and record the
        reply. While the runner is between turns the carrier is told to
        pause and ask again. Once the run is over the answer is empty.
        """
        telephony = self.telephony()
        run = await self.store.get_run(run_id) if run_id else None
        if run is None or run.status != RunStatus.RUNNING:
            logger.warning("voice_webhook_no_audio", run_id=run_id)
            return telephony.call_instructions()

        turn = run.metadata.get("currentTurn", 0)
        audio_url = run.metadata.get("currentAudioUrl", "")
        if audio_url and run.metadata.get("waitingForRecording") and self._played.get(run_id) != turn:
            self._played[run_id] = turn
            return telephony.call_instructions(audio_url=audio_url,
                                               action_url=self.recording_webhook_url(),
                                               max_length=10, timeout=3)
        return telephony.call_instructions(action_url=self.voice_webhook_url(run_id))

    async def process_agent_recording(self, call_sid: str, recording_url: str) -> Optional[TranscriptEntry]:
        """
        Transcribe the agent's recorded reply onto the matching run.

        The action leg and recordingStatusCallback both report the same
        recording, often concurrently. The url is claimed before the first
        await and the append is rejected if the url is already on the run.
        """
        if recording_url in self._pending_recordings:
            logger.debug("recording_already_processing", call_sid=call_sid, url=recording_url)
            return None
        self._pending_recordings.add(recording_url)
        try:
            return await self._ingest_recording(call_sid, recording_url)
        finally:
            self._pending_recordings.discard(recording_url)

    async def _ingest_recording(self, call_sid: str, recording_url: str) -> Optional[TranscriptEntry]:
        run = await self.store.find_run_by_call_sid(call_sid)
        if run is None:
            logger.warning("recording_for_unknown_call", call_sid=call_sid)
            return None
        if any(t.audio_url == recording_url for t in run.transcripts):
            logger.debug("recording_already_processed", run_id=run.id, url=recording_url)
            return None

        try:
            audio = await self.telephony().download_recording(recording_url)
            result, provider = await self.transcription.transcribe_text(
                audio, run.config.language, "audio/mpeg",
            )
            entry = TranscriptEntry(
                speaker=Speaker.AGENT, message=result.text, timestamp=self._offset_ms(run),
                confidence=result.confidence, language=result.language or run.config.language,
                audio_url=recording_url,
                duration=round(result.duration * 1000) if result.duration else 0,
            )
            logger.info("agent_recording_transcribed", run_id=run.id, provider=provider,
                        chars=len(result.text))
        except Exception as e:
            logger.error("agent_recording_failed", run_id=run.id, call_sid=call_sid, error=str(e))
            entry = TranscriptEntry(
                speaker=Speaker.AGENT, message=f"[Error transcribing: {e}]",
                timestamp=self._offset_ms(run), confidence=0.0, audio_url=recording_url,
            )

        if await self.store.append_run_transcript(run.id, entry, unique_audio_url=True) is None:
            return None
        return entry

    def get_audio(self, filename: str) -> bytes:
        data = self.audio.get(filename)
        if data is None:
            raise NotFoundError(f"Audio file {filename} not found")
        return data

    # ── Analytics ─────────────────────────────────────────────

    async def analytics(self, date_from: Optional[datetime] = None,
                        date_to: Optional[datetime] = None) -> dict[str, Any]:
        runs = await self.store.list_runs(date_from, date_to)
        total = len(runs)
        by_status = {s.value: sum(1 for r in runs if r.status == s) for s in RunStatus}

        scores = [r.evaluation.overall_score for r in runs if r.evaluation]
        latencies = [r.evaluation.latency.average_response_time for r in runs
                     if r.evaluation and r.evaluation.latency.average_response_time]
        grades = {g.value: 0 for g in Grade}
        for r in runs:
            if r.evaluation:
                grades[r.evaluation.grade.value] += 1

        groups: dict[str, dict[str, Any]] = {}
        for r in runs:
            day = r.created_at.date().isoformat()
            g = groups.setdefault(day, {"date": day, "testRuns": 0, "completed": 0, "failed": 0,
                                        "scores": [], "latencies": []})
            g["testRuns"] += 1
            if r.status == RunStatus.COMPLETED:
                g["completed"] += 1
            elif r.status == RunStatus.FAILED:
                g["failed"] += 1
            if r.evaluation:
                g["scores"].append(r.evaluation.overall_score)
                if r.evaluation.latency.average_response_time:
                    g["latencies"].append(r.evaluation.latency.average_response_time)

        trends = []
        for day in sorted(groups):
            g = groups[day]
            s, lat = g.pop("scores"), g.pop("latencies")
            g["successRate"] = round(g["completed"] / g["testRuns"] * 100, 2)
            g["averageScore"] = round(sum(s) / len(s), 2) if s else 0
            g["averageLatency"] = round(sum(lat) / len(lat)) if lat else 0
            trends.append(g)

        return {
            "summary": {
                "totalRuns": total,
                "completedRuns": by_status["completed"],
                "failedRuns": by_status["failed"],
                "pendingRuns": by_status["pending"],
                "runningRuns": by_status["running"],
                "successRate": round(by_status["completed"] / total * 100, 2) if total else 0,
                "averageScore": round(sum(scores) / len(scores), 2) if scores else 0,
                "averageLatency": round(sum(latencies) / len(latencies)) if latencies else 0,
            },
            "statusDistribution": by_status,
            "gradeDistribution": grades,
            "trends": trends,
        }
