"""Tests for the YAML settings loader and env-var substitution."""
import pytest

from config.settings import (
    Settings, _substitute_env_vars, get_settings, load_settings, reset_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestEnvSubstitution:
    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
        assert _substitute_env_vars("${SMTP_HOST}") == "smtp.example.com"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("QUEUE_BACKEND", raising=False)
        assert _substitute_env_vars("${QUEUE_BACKEND:-memory}") == "memory"

    def test_unset_without_default_is_empty(self, monkeypatch):
        monkeypatch.delenv("SMTP_PASSWORD", raising=False)
        assert _substitute_env_vars("pw=${SMTP_PASSWORD}") == "pw="

    def test_set_variable_wins_over_default(self, monkeypatch):
        monkeypatch.setenv("QUEUE_BACKEND", "redis")
        assert _substitute_env_vars("${QUEUE_BACKEND:-memory}") == "redis"


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings == Settings()
        assert settings.queue.backend == "memory"
        assert settings.review.sla_minutes["urgent"] == 30

    def test_sections_from_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6380")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "app_name: AcmeTravel\n"
            "queue:\n"
            "  backend: redis\n"
            "  redis_url: ${TEST_REDIS_URL}\n"
            "  concurrency: 8\n"
            "  unknown_key: ignored\n"
            "pipeline:\n"
            "  confidence_threshold: 80\n"
            "llm:\n"
            "  provider: openai\n"
            "  tenants:\n"
            "    acme:\n"
            "      api_key: sk-acme\n"
            "      model: gpt-4o\n"
        )

        settings = load_settings(str(path))

        assert settings.app_name == "AcmeTravel"
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://cache:6380"
        assert settings.queue.concurrency == 8
        assert settings.pipeline.confidence_threshold == 80
        assert settings.pipeline.max_missing_fields == 3
        assert settings.llm.provider == "openai"
        assert settings.llm.tenants["acme"].api_key == "sk-acme"
        assert settings.llm.tenants["acme"].model == "gpt-4o"

    def test_sla_minutes_merge_into_defaults(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "review:\n"
            "  reminder_window_minutes: 60\n"
            "  sla_minutes:\n"
            "    normal: 240\n"
        )

        review = load_settings(str(path)).review

        assert review.reminder_window_minutes == 60
        assert review.sla_minutes == {"urgent": 30, "high": 120, "normal": 240, "low": 1440}

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("debug: true\n")
        monkeypatch.setenv("TRAVEL_INBOX_CONFIG", str(path))

        assert load_settings().debug is True

    def test_get_settings_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRAVEL_INBOX_CONFIG", str(tmp_path / "absent.yaml"))
        first = get_settings()
        assert get_settings() is first

        reset_settings()
        assert get_settings() is not first
