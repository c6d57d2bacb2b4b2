"""Shared test fixtures for VoiceQA."""
import pytest
import pytest_asyncio

from api.bootstrap import build_services
from config.settings import (
    CacheConfig, OrchestratorConfig, Settings, StorageConfig, TelephonyConfig, WebhookConfig,
)
from database.store_memory import InMemoryRecordStore
from fakes import FakeLLM, FakeSTT, FakeTTS, FakeTelephony
from voice.providers import Capability, ProviderError, ProviderRegistry


# ══════════════════════════════════════════════════════════════
#  Fixtures
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def stt() -> FakeSTT:
    return FakeSTT()


@pytest.fixture
def tts() -> FakeTTS:
    return FakeTTS()


@pytest.fixture
def llm_backend() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def telephony() -> FakeTelephony:
    return FakeTelephony()


@pytest.fixture
def registry(stt, tts, llm_backend, telephony) -> ProviderRegistry:
    reg = ProviderRegistry(default_timeout_s=5.0)
    reg.register(Capability.STT, stt)
    reg.register(Capability.TTS, tts)
    reg.register(Capability.LLM, llm_backend)
    reg.register(Capability.TELEPHONY, telephony)
    return reg


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings tuned for tests: local storage, no waits, no webhook backoff."""
    return Settings(
        public_base_url="http://testserver",
        storage=StorageConfig(root_dir=str(tmp_path / "audio")),
        telephony=TelephonyConfig(provider="twilio", simulate_calls=True),
        cache=CacheConfig(sweep_interval_s=3600),
        webhooks=WebhookConfig(retry_delays_s=[0, 0, 0], timeout_s=2.0),
        orchestrator=OrchestratorConfig(
            reply_timeout_s=0.2, call_settle_s=0, turn_pause_s=0, max_turns=3,
        ),
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest_asyncio.fixture
async def services(settings, registry, store):
    svc = build_services(settings, registry=registry, store=store)
    yield svc
    await svc.close()


@pytest.fixture
def size_limit_error() -> ProviderError:
    return ProviderError("Request payload exceeds the 25MB limit", provider="primary-stt",
                         code=3006, provider_specific=True)
