"""
Component wiring for the API process.

Every process-wide component is built once here, started in the app
lifespan and closed on shutdown. Tests pass their own registry or store
to build_services() instead of patching module globals.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings
from database.store_base import BaseRecordStore
from database.store_factory import create_store
from evaluation.cache import ContentCache
from evaluation.calls import CallService
from evaluation.errors import ErrorClassifier
from evaluation.knowledge_base import KnowledgeBaseService
from evaluation.metrics import KnowledgeBaseJobsAnalyzer
from evaluation.performance import PerformanceMonitor
from evaluation.pipeline import CallProcessor
from evaluation.rate_limit import RateLimiter
from evaluation.scoring import Evaluator
from evaluation.transcription import TranscriptionService
from notifications.webhooks import WebhookDispatcher
from orchestrator.runner import ConversationRunner
from storage.content_store import ContentStore, UtteranceAudioStore
from voice.factory import build_registry
from voice.llm import LLMService
from voice.providers import ProviderRegistry

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseRecordStore
    content: ContentStore
    utterances: UtteranceAudioStore
    registry: ProviderRegistry
    llm: LLMService
    cache: ContentCache
    rate_limiter: RateLimiter
    monitor: PerformanceMonitor
    classifier: ErrorClassifier
    webhooks: WebhookDispatcher
    transcription: TranscriptionService
    evaluator: Evaluator
    processor: CallProcessor
    calls: CallService
    knowledge: KnowledgeBaseService
    runner: ConversationRunner

    async def start(self) -> None:
        await self.cache.start()
        await self.rate_limiter.start()
        logger.info("services_started", providers=self.registry.list_providers())

    async def close(self) -> None:
        await self.runner.shutdown()
        await self.processor.shutdown()
        await self.cache.stop()
        await self.rate_limiter.stop()
        await self.webhooks.close()
        await self.registry.close()
        logger.info("services_stopped")


def build_services(
    settings: Settings,
    registry: Optional[ProviderRegistry] = None,
    store: Optional[BaseRecordStore] = None,
    webhooks: Optional[WebhookDispatcher] = None,
) -> Services:
    store = store or create_store({"store_backend": settings.storage.record_backend})
    registry = registry or build_registry(settings)
    content = ContentStore(settings.storage.root_dir)
    utterances = UtteranceAudioStore(settings.public_base_url)

    cache = ContentCache(settings.cache.default_ttl_s, settings.cache.sweep_interval_s)
    rate_limiter = RateLimiter(settings.rate_limit.endpoints, settings.rate_limit.sweep_interval_s)
    monitor = PerformanceMonitor()
    classifier = ErrorClassifier(settings.errors.max_retries)
    webhooks = webhooks or WebhookDispatcher(settings.webhooks)

    llm = LLMService(registry, settings.llm.model, settings.llm.max_tokens, settings.llm.temperature)
    transcription = TranscriptionService(
        registry, cache, monitor,
        model=settings.speech.stt_model,
        transcript_ttl=settings.cache.transcript_ttl_s,
        timeout_s=settings.speech.stt_timeout_s,
    )
    evaluator = Evaluator(KnowledgeBaseJobsAnalyzer(llm))

    processor = CallProcessor(
        store, content, transcription, evaluator, cache, monitor, classifier, webhooks,
        evaluation_ttl=settings.cache.evaluation_ttl_s,
    )
    runner = ConversationRunner(
        store, registry, llm, transcription, evaluator, utterances,
        config=settings.orchestrator,
        public_base_url=settings.public_base_url,
        llm_model=settings.llm.model,
        classifier=classifier,
    )

    return Services(
        settings=settings,
        store=store,
        content=content,
        utterances=utterances,
        registry=registry,
        llm=llm,
        cache=cache,
        rate_limiter=rate_limiter,
        monitor=monitor,
        classifier=classifier,
        webhooks=webhooks,
        transcription=transcription,
        evaluator=evaluator,
        processor=processor,
        calls=CallService(store, content, processor, monitor),
        knowledge=KnowledgeBaseService(store),
        runner=runner,
    )
