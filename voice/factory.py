"""
Registry construction from Settings.

Order matters: the configured primary STT backend is tried first, the
configured fallback second, any other backend with credentials last.
"""
from __future__ import annotations

import structlog

from config.settings import Settings
from voice.llm import AnthropicLLM, CloudflareLLM, HuggingFaceLLM, OpenAILLM
from voice.providers import Capability, ProviderRegistry, TTSProvider
from voice.stt import CloudflareWhisperSTT, HuggingFaceSTT, OpenAIWhisperSTT
from voice.tts import ElevenLabsTTS

logger = structlog.get_logger()


def build_registry(settings: Settings, telephony=None) -> ProviderRegistry:
    """Register every backend the settings describe. Pass telephony to override the carrier."""
    speech = settings.speech
    registry = ProviderRegistry(default_timeout_s=speech.stt_timeout_s)

    stt_backends = {
        "cloudflare": CloudflareWhisperSTT(
            speech.cloudflare_account_id, speech.cloudflare_api_token, speech.stt_timeout_s,
        ),
        "huggingface": HuggingFaceSTT(speech.huggingface_api_key, timeout_s=speech.stt_timeout_s,
                                      default_model=speech.stt_fallback_model),
    }
    if speech.openai_api_key:
        stt_backends["openai"] = OpenAIWhisperSTT(speech.openai_api_key, speech.stt_timeout_s)

    ordered = [speech.stt_primary, speech.stt_fallback] + [
        n for n in stt_backends if n not in (speech.stt_primary, speech.stt_fallback)
    ]
    for name in ordered:
        backend = stt_backends.get(name)
        if backend is not None:
            registry.register(Capability.STT, backend)

    if speech.tts_provider != TTSProvider.ELEVENLABS.value:
        raise ValueError(
            f"Unsupported TTS provider: '{speech.tts_provider}'. "
            f"Supported: {[p.value for p in TTSProvider]}"
        )
    registry.register(Capability.TTS, ElevenLabsTTS(
        speech.elevenlabs_api_key, speech.tts_voice_id, speech.tts_model, speech.tts_timeout_s,
    ))

    llm = settings.llm
    if llm.provider == "anthropic" or (llm.api_key and llm.model.startswith("claude")):
        registry.register(Capability.LLM, AnthropicLLM(llm.api_key, llm.model))
    if llm.provider == "openai" or speech.openai_api_key:
        key = llm.api_key if llm.provider == "openai" else speech.openai_api_key
        registry.register(Capability.LLM, OpenAILLM(key))
    registry.register(Capability.LLM, CloudflareLLM(
        speech.cloudflare_account_id, speech.cloudflare_api_token, llm.timeout_s,
    ))
    registry.register(Capability.LLM, HuggingFaceLLM(speech.huggingface_api_key, llm.timeout_s))

    if telephony is None:
        from channels.telephony.factory import TelephonyFactory
        telephony = TelephonyFactory.create(settings.telephony)
    registry.register(Capability.TELEPHONY, telephony, primary=True)

    logger.info("provider_registry_built", providers=registry.list_providers())
    return registry
