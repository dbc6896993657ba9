"""
Configuration loading and validation.

INVARIANT:
    Invalid configuration fails at load time with a ValueError; secrets never
    appear in error messages; environment variables override the YAML file.
"""

import os
from pathlib import Path

import pytest
import yaml

from campus.config import (
    ConfigSchema,
    ConfigLoader,
    MessagingConfig,
    TimeoutPolicyConfig,
    load_config,
    env_flag,
)
from campus.messaging import RetryPolicy

REPO_CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

ENV_VARS = (
    "CAMPUS_ALERT_WEBHOOK_URL",
    "CAMPUS_SWEEP_INTERVAL_SECONDS",
    "CAMPUS_BROADCAST_ENABLED",
    "CAMPUS_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write_config(directory: Path, data) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "config.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")
    return directory


class TestSchema:

    def test_empty_document_uses_defaults(self):
        config = ConfigSchema()
        assert config.timeout.max_cas_retries == 3
        assert config.messaging.max_retries == 3
        assert config.scheduler.sweep_interval_seconds == 60.0
        assert config.statistics.timezone == "Asia/Shanghai"
        assert set(config.timeout.policies) == {"MAIL", "SHOPPING", "PURCHASE_REQUEST"}

    def test_repository_config_is_valid(self):
        config = load_config(REPO_CONFIG_DIR)
        assert config.timeout.policies["SHOPPING"].phase_timeout_minutes == {"PICKUP": 45, "CONFIRMATION": 1440}
        assert config.broadcast.enabled is False

    @pytest.mark.parametrize("kwargs", [
        dict(default_timeout_minutes=0, warning_threshold_ratio=0.8, archive_threshold=3),
        dict(default_timeout_minutes=60, warning_threshold_ratio=1.2, archive_threshold=3),
        dict(default_timeout_minutes=60, warning_threshold_ratio=0.8, archive_threshold=0),
        dict(default_timeout_minutes=60, warning_threshold_ratio=0.8, archive_threshold=3,
             phase_timeout_minutes={"LUNCH": 10}),
    ])
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            TimeoutPolicyConfig(**kwargs)

    def test_unknown_order_type_rejected(self):
        with pytest.raises(ValueError):
            ConfigSchema(timeout={"policies": {"PARCEL": {
                "default_timeout_minutes": 10, "warning_threshold_ratio": 0.5, "archive_threshold": 1,
            }}})

    def test_phase_keys_normalized(self):
        policy = TimeoutPolicyConfig(default_timeout_minutes=60, warning_threshold_ratio=0.8,
                                     archive_threshold=3, phase_timeout_minutes={" pickup ": 30})
        assert policy.phase_timeout_minutes == {"PICKUP": 30}

    def test_max_delay_below_base_rejected(self):
        with pytest.raises(ValueError):
            MessagingConfig(base_delay_ms=5000, max_delay_ms=1000)

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError):
            ConfigSchema(statistics={"timezone": "Mars/Olympus"})

    def test_retry_policy_from_config(self):
        policy = RetryPolicy.from_config(MessagingConfig(max_retries=5, base_delay_ms=500))
        assert policy.max_retries == 5
        assert policy.delay_for_retry(2) == 1000

    def test_yaml_round_trip(self, tmp_path):
        config = ConfigSchema(order_db_path=tmp_path / "orders.db")
        path = tmp_path / "out.yaml"
        config.to_yaml(path)
        assert ConfigSchema.from_yaml(path) == config


class TestLoader:

    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config(tmp_path / "nowhere")
        assert config.messaging.base_delay_ms == 1000

    def test_empty_file_rejected(self, tmp_path):
        (tmp_path / "config.yaml").write_text("", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(tmp_path)

    def test_non_mapping_rejected(self, tmp_path):
        (tmp_path / "config.yaml").write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(tmp_path)

    def test_env_overrides(self, tmp_path, monkeypatch):
        directory = _write_config(tmp_path, {"scheduler": {"sweep_interval_seconds": 60}})
        monkeypatch.setenv("CAMPUS_SWEEP_INTERVAL_SECONDS", "15")
        monkeypatch.setenv("CAMPUS_BROADCAST_ENABLED", "yes")
        monkeypatch.setenv("CAMPUS_LOG_LEVEL", "debug")

        config = load_config(directory)
        assert config.scheduler.sweep_interval_seconds == 15.0
        assert config.broadcast.enabled is True
        assert config.logging.log_level.value == "DEBUG"

    def test_webhook_from_secrets_file(self, tmp_path, monkeypatch):
        directory = _write_config(tmp_path, {})
        (directory / ".env.local").write_text(
            "CAMPUS_ALERT_WEBHOOK_URL=https://hooks.example/secret-token\n", encoding="utf-8"
        )

        try:
            config = load_config(directory)
        finally:
            os.environ.pop("CAMPUS_ALERT_WEBHOOK_URL", None)
        assert config.deadletter.alert_webhook_url == "https://hooks.example/secret-token"

    def test_validation_error_redacts_secrets(self, tmp_path, monkeypatch):
        directory = _write_config(tmp_path, {"deadletter": {"alert_max_attempts": 0}})
        monkeypatch.setenv("CAMPUS_ALERT_WEBHOOK_URL", "https://hooks.example/secret-token")

        with pytest.raises(ValueError) as excinfo:
            load_config(directory)
        assert "secret-token" not in str(excinfo.value)

    def test_scrub_secrets(self):
        scrubbed = ConfigLoader.scrub_secrets({"deadletter": {"alert_webhook_url": "https://x/y"}})
        assert scrubbed == {"deadletter": {"alert_webhook_url": "[REDACTED]"}}

    def test_bad_number_in_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CAMPUS_SWEEP_INTERVAL_SECONDS", "often")
        with pytest.raises(ValueError):
            load_config(tmp_path)


def test_env_flag(monkeypatch):
    monkeypatch.setenv("CAMPUS_FLAG", "On")
    assert env_flag("CAMPUS_FLAG") is True
    monkeypatch.delenv("CAMPUS_FLAG")
    assert env_flag("CAMPUS_FLAG", default=True) is True
