"""
Configuration loader for the VoiceQA platform.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "cloudflare"                      # anthropic | openai | cloudflare | huggingface
    model: str = "@cf/meta/llama-3.1-8b-instruct"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""
    timeout_s: float = 60.0


@dataclass
class SpeechConfig:
    stt_primary: str = "cloudflare"
    stt_fallback: str = "huggingface"
    stt_model: str = "@cf/openai/whisper"
    stt_fallback_model: str = "openai/whisper-large-v3"
    stt_timeout_s: float = 120.0                      # audio uploads can be large
    tts_provider: str = "elevenlabs"
    tts_voice_id: str = "EXAVITQu4vr4xnSDxMaL"
    tts_model: str = "eleven_multilingual_v2"
    tts_timeout_s: float = 30.0
    cloudflare_account_id: str = ""
    cloudflare_api_token: str = ""
    huggingface_api_key: str = ""
    elevenlabs_api_key: str = ""
    openai_api_key: str = ""


@dataclass
class TelephonyConfig:
    provider: str = "twilio"                          # twilio | plivo
    account_sid: str = ""
    auth_token: str = ""
    phone_number: str = ""
    simulate_calls: bool = False


@dataclass
class StorageConfig:
    root_dir: str = "./data/audio"
    record_backend: str = "memory"


@dataclass
class CacheConfig:
    default_ttl_s: int = 3600
    transcript_ttl_s: int = 0                         # 0 = never expire
    evaluation_ttl_s: int = 7 * 24 * 3600
    sweep_interval_s: int = 300


@dataclass
class RateLimitRule:
    window_s: int = 3600
    max_requests: int = 100


@dataclass
class RateLimitConfig:
    sweep_interval_s: int = 300
    endpoints: dict[str, RateLimitRule] = field(default_factory=lambda: {
        "upload": RateLimitRule(3600, 10),
        "bulk-upload": RateLimitRule(3600, 5),
        "api": RateLimitRule(3600, 1000),
        "default": RateLimitRule(3600, 100),
    })


@dataclass
class WebhookConfig:
    default_url: str = ""
    default_secret: str = ""
    default_customer: str = "default-customer"
    timeout_s: float = 10.0
    retry_delays_s: list[float] = field(default_factory=lambda: [1.0, 2.0, 4.0])


@dataclass
class OrchestratorConfig:
    reply_timeout_s: float = 30.0
    call_settle_s: float = 2.0
    turn_pause_s: float = 1.0
    max_turns: int = 10


@dataclass
class ErrorConfig:
    max_retries: int = 3


@dataclass
class Settings:
    app_name: str = "VoiceQA"
    debug: bool = False
    public_base_url: str = "http://localhost:8000"
    llm: LLMConfig = field(default_factory=LLMConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    telephony: TelephonyConfig = field(default_factory=TelephonyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    errors: ErrorConfig = field(default_factory=ErrorConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _fill(target: Any, data: dict[str, Any]) -> None:
    """Copy known keys from a YAML section onto a dataclass instance."""
    for key, value in (data or {}).items():
        if not hasattr(target, key) or value in (None, ""):
            continue
        current = getattr(target, key)
        if isinstance(current, bool):
            value = _as_bool(value)
        elif isinstance(current, (int, float)) and not isinstance(current, bool):
            value = type(current)(value)
        setattr(target, key, value)


def _apply_rate_limit_env(config: RateLimitConfig) -> None:
    """RATE_LIMIT_UPLOAD / RATE_LIMIT_API override the per-window maximum."""
    for env_name, endpoint in (("RATE_LIMIT_UPLOAD", "upload"), ("RATE_LIMIT_API", "api")):
        raw = os.environ.get(env_name)
        if raw and raw.isdigit():
            config.endpoints.setdefault(endpoint, RateLimitRule()).max_requests = int(raw)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICEQA_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        settings.public_base_url = raw.get("public_base_url") or settings.public_base_url

        _fill(settings.llm, raw.get("llm", {}))
        _fill(settings.speech, raw.get("speech", {}))
        _fill(settings.telephony, raw.get("telephony", {}))
        _fill(settings.storage, raw.get("storage", {}))
        _fill(settings.cache, raw.get("cache", {}))
        _fill(settings.webhooks, raw.get("webhooks", {}))
        _fill(settings.orchestrator, raw.get("orchestrator", {}))
        _fill(settings.errors, raw.get("errors", {}))

        if "rate_limit" in raw:
            rl = raw["rate_limit"] or {}
            settings.rate_limit.sweep_interval_s = int(
                rl.get("sweep_interval_s", settings.rate_limit.sweep_interval_s)
            )
            for name, rule in (rl.get("endpoints") or {}).items():
                settings.rate_limit.endpoints[name] = RateLimitRule(
                    window_s=int(rule.get("window_s", 3600)),
                    max_requests=int(rule.get("max_requests", 100)),
                )

    _apply_rate_limit_env(settings.rate_limit)

    if not settings.webhooks.default_url:
        settings.webhooks.default_url = os.environ.get("WEBHOOK_URL", "")
    if not settings.webhooks.default_secret:
        settings.webhooks.default_secret = os.environ.get("WEBHOOK_SECRET", "")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
