"""
Voice Subsystem — Interchangeable speech, language-model and carrier backends.

Modules:
- providers: Capability registry with ordered fallback
- stt: Speech-to-text backends (Cloudflare whisper, Hugging Face, OpenAI)
- tts: Text-to-speech backends (ElevenLabs)
- llm: Language model backends and LLMService
- factory: Builds a registry from Settings
"""
from voice.providers import (
    Capability, ProviderRegistry, ProviderError, AllProvidersFailed,
    STTProvider, TTSProvider, LLMProvider, TelephonyProvider,
)
from voice.stt import TranscriptionResult, CloudflareWhisperSTT, HuggingFaceSTT, OpenAIWhisperSTT
from voice.tts import ElevenLabsTTS
from voice.llm import LLMService, FALLBACK_MODEL
from voice.factory import build_registry

__all__ = [
    "Capability", "ProviderRegistry", "ProviderError", "AllProvidersFailed",
    "STTProvider", "TTSProvider", "LLMProvider", "TelephonyProvider",
    "TranscriptionResult", "CloudflareWhisperSTT", "HuggingFaceSTT", "OpenAIWhisperSTT",
    "ElevenLabsTTS", "LLMService", "FALLBACK_MODEL", "build_registry",
]
