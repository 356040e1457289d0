"""Tests for settings loading and logging configuration."""
import io
import json

import pytest
import structlog

from config.logging_setup import configure_logging
from config.settings import (
    CacheConfig, QueueConfig, Settings, _substitute_env_vars, load_settings,
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    # load_settings() caches into a module global
    monkeypatch.setattr("config.settings._settings", None)


class TestEnvSubstitution:
    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380")
        assert _substitute_env_vars("${REDIS_URL}") == "redis://cache:6380"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        assert _substitute_env_vars("${REDIS_URL:-redis://localhost:6379}") == "redis://localhost:6379"

    def test_default_used_when_empty(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "")
        assert _substitute_env_vars("${REDIS_URL:-redis://fallback}") == "redis://fallback"

    def test_unset_without_default_left_verbatim(self, monkeypatch):
        monkeypatch.delenv("NOT_THERE", raising=False)
        assert _substitute_env_vars("${NOT_THERE}") == "${NOT_THERE}"


class TestLoadSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.queue.ack_deadline_seconds == 60
        assert settings.queue.recover_batch_size == 100
        assert settings.queue.ack_mode == "on_close"
        assert settings.cache.ttl_days == 7
        assert settings.cache.key_prefix == "TicketSystem:"
        assert settings.archive.retention_days == 7

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.queue == QueueConfig()
        assert settings.cache == CacheConfig()

    def test_load_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS", "redis://redis:6379/2")
        monkeypatch.setenv("TECHS", "a@example.com, b@example.com")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "debug: true\n"
            "queue:\n"
            "  backend: redis\n"
            "  redis_url: ${TEST_REDIS}\n"
            "  max_batch: 25\n"
            "  not_a_setting: 1\n"
            "cache:\n"
            "  backend: redis\n"
            "  ttl_days: 3\n"
            "notifier:\n"
            "  backend: mailgun\n"
            "  recipients: ${TECHS}\n"
            "archive:\n"
            "  retention_days: 14\n"
        )

        settings = load_settings(str(path))

        assert settings.debug is True
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://redis:6379/2"
        assert settings.queue.max_batch == 25
        assert settings.queue.topic == "tickets-topic"
        assert settings.cache.ttl_days == 3
        assert settings.notifier.recipients == ["a@example.com", "b@example.com"]
        assert settings.archive.retention_days == 14

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "alt.yaml"
        path.write_text("app_name: AltPipeline\n")
        monkeypatch.setenv("TICKETS_CONFIG", str(path))
        assert load_settings().app_name == "AltPipeline"

    def test_shipped_settings_file_loads(self, monkeypatch):
        monkeypatch.delenv("TICKETS_CONFIG", raising=False)
        settings = load_settings()
        assert settings.queue.topic == "tickets-topic"
        assert settings.notifier.recipients == [] or all(settings.notifier.recipients)


class TestLogging:
    @pytest.fixture(autouse=True)
    def restore_structlog(self):
        yield
        structlog.reset_defaults()

    def test_json_logs_include_context(self):
        stream = io.StringIO()
        configure_logging(json_logs=True, stream=stream)

        with structlog.contextvars.bound_contextvars(correlation_id="ticket-1"):
            structlog.get_logger().info("ticket_processed", tier="high")

        event = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert event["event"] == "ticket_processed"
        assert event["correlation_id"] == "ticket-1"
        assert event["tier"] == "high"
        assert event["level"] == "info"
        assert "timestamp" in event

    def test_debug_filtered_unless_enabled(self):
        stream = io.StringIO()
        configure_logging(debug=False, json_logs=True, stream=stream)
        structlog.get_logger().debug("noise")
        assert stream.getvalue() == ""
