"""
Configuration loader with environment variable and secrets handling.

Loads configuration from:
1. config.yaml (main config, optional)
2. .env.local (secrets file; loaded into process env)
3. Environment variables (highest priority)

Secrets are never logged or displayed.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Any

from dotenv import load_dotenv
from pydantic import ValidationError
import yaml

from .env import env_flag, env_float


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Priority (highest to lowest):
    1. OS Environment variables
    2. .env.local file
    3. config.yaml
    """

    SECRET_KEYS = {
        "alert_webhook_url",
    }

    def __init__(self, config_dir: Path = Path("config")):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.yaml"
        self.secrets_file = self.config_dir / ".env.local"

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources.

        A missing config.yaml yields the built-in defaults; an empty or
        non-mapping document is rejected.

        Raises:
            ValueError: If the YAML document is malformed
        """
        config: Dict[str, Any] = {}
        if self.config_file.exists():
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if loaded is None:
                raise ValueError(f"Empty configuration file: {self.config_file}")
            if not isinstance(loaded, dict):
                raise ValueError(f"Configuration root must be a mapping: {self.config_file}")
            config = loaded

        # Do NOT override already-set OS env vars
        if self.secrets_file.exists():
            load_dotenv(self.secrets_file, override=False)

        webhook = os.getenv("CAMPUS_ALERT_WEBHOOK_URL")
        if webhook:
            config.setdefault("deadletter", {})["alert_webhook_url"] = webhook

        sweep_interval = env_float("CAMPUS_SWEEP_INTERVAL_SECONDS")
        if sweep_interval is not None:
            config.setdefault("scheduler", {})["sweep_interval_seconds"] = sweep_interval

        if os.getenv("CAMPUS_BROADCAST_ENABLED") is not None:
            config.setdefault("broadcast", {})["enabled"] = env_flag("CAMPUS_BROADCAST_ENABLED")

        log_level = os.getenv("CAMPUS_LOG_LEVEL")
        if log_level:
            config.setdefault("logging", {})["log_level"] = log_level.strip().upper()

        return config

    def load_and_validate(self):
        """
        Load and validate configuration.

        Returns:
            ConfigSchema instance
        """
        from .schema import ConfigSchema

        config_dict = self.load()

        try:
            return ConfigSchema(**config_dict)
        except ValidationError as e:
            error_msg = str(e)
            for value in self._secret_values(config_dict):
                error_msg = error_msg.replace(value, "[REDACTED]")
            raise ValueError(f"Configuration validation failed: {error_msg}") from e

    @classmethod
    def _secret_values(cls, config_dict: Dict[str, Any]) -> list:
        values = []

        def _collect(d: Dict[str, Any]) -> None:
            for key, value in d.items():
                if key.lower() in cls.SECRET_KEYS and isinstance(value, str) and value:
                    values.append(value)
                elif isinstance(value, dict):
                    _collect(value)

        _collect(config_dict)
        return values

    @staticmethod
    def scrub_secrets(config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace secret values with [REDACTED] for logging.

        Returns:
            Copy with secrets redacted
        """
        scrubbed = copy.deepcopy(config_dict)

        def _scrub_recursive(d: Dict[str, Any]) -> None:
            for key, value in d.items():
                if key.lower() in ConfigLoader.SECRET_KEYS:
                    d[key] = "[REDACTED]"
                elif isinstance(value, dict):
                    _scrub_recursive(value)
                elif isinstance(value, list):
                    for item in value:
                        if isinstance(item, dict):
                            _scrub_recursive(item)

        _scrub_recursive(scrubbed)
        return scrubbed


def load_config(config_dir: Path = Path("config")):
    """
    Convenience function to load and validate configuration.

    Returns:
        Validated ConfigSchema instance
    """
    return ConfigLoader(config_dir).load_and_validate()
