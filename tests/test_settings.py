"""
Tests for YAML settings loading and environment overrides.
"""
import pytest

import config.settings as settings_module
from config.settings import RateLimitRule, Settings, load_settings


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    for var in ("VOICEQA_CONFIG", "RATE_LIMIT_UPLOAD", "RATE_LIMIT_API",
                "WEBHOOK_URL", "WEBHOOK_SECRET", "TEST_TWILIO_SID", "TEST_SIMULATE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(settings_module, "_settings", None)


def _write(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.telephony.provider == "twilio"
        assert settings.cache.transcript_ttl_s == 0
        assert settings.rate_limit.endpoints["upload"].max_requests == 10

    def test_env_substitution_and_coercion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_TWILIO_SID", "AC123")
        monkeypatch.setenv("TEST_SIMULATE", "true")
        path = _write(tmp_path, """
telephony:
  provider: plivo
  account_sid: "${TEST_TWILIO_SID}"
  simulate_calls: "${TEST_SIMULATE}"
  phone_number: "${UNSET_PHONE}"
orchestrator:
  reply_timeout_s: "12"
  max_turns: "4"
""")
        settings = load_settings(path)
        assert settings.telephony.provider == "plivo"
        assert settings.telephony.account_sid == "AC123"
        assert settings.telephony.simulate_calls is True
        assert settings.telephony.phone_number == ""
        assert settings.orchestrator.reply_timeout_s == 12.0
        assert settings.orchestrator.max_turns == 4

    def test_rate_limit_rules_and_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_API", "25")
        path = _write(tmp_path, """
rate_limit:
  sweep_interval_s: 60
  endpoints:
    upload:
      window_s: 60
      max_requests: 2
""")
        settings = load_settings(path)
        assert settings.rate_limit.sweep_interval_s == 60
        assert settings.rate_limit.endpoints["upload"] == RateLimitRule(60, 2)
        assert settings.rate_limit.endpoints["api"].max_requests == 25

    def test_webhook_defaults_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WEBHOOK_URL", "https://hooks.example.com/qa")
        monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.webhooks.default_url == "https://hooks.example.com/qa"
        assert settings.webhooks.default_secret == "s3cret"

    def test_config_path_from_env_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOICEQA_CONFIG", _write(tmp_path, "app_name: QA-Staging\n"))
        settings = settings_module.get_settings()
        assert isinstance(settings, Settings)
        assert settings.app_name == "QA-Staging"
        assert settings_module.get_settings() is settings
