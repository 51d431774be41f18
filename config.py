"""Configuration for the Glue Lock cloud monitor."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


DEFAULT_DATA_DIR = os.path.expanduser("~/.glue-lock")
DEFAULT_CONFIG_FILE = os.path.join(DEFAULT_DATA_DIR, "config.json")
DEFAULT_WEB_PORT = 8099

# Settings-store key holding the pre-issued API key
SETTING_API_KEY = "GlueLockAuth"
# Per-device setting holding the polling interval in minutes
SETTING_POLLING_INTERVAL = "polling_interval"


@dataclass
class CacheConfig:
    """Response cache for status reads."""

    enabled: bool = True
    ttl_sec: float = 30.0


@dataclass
class RetryConfig:
    """Retry with exponential backoff for transient failures."""

    max_attempts: int = 3
    initial_delay_sec: float = 1.0
    max_delay_sec: float = 10.0


@dataclass
class ApiConfig:
    """Glue cloud API endpoint configuration."""

    base_url: str = "https://user-api.gluehome.com"
    version: str = "v1"
    timeout_sec: float = 10.0
    operations_timeout_sec: float = 30.0  # Physical actuation is slow
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.version}"


@dataclass
class PollConfig:
    """Adaptive polling configuration."""

    default_interval_min: int = 20
    min_interval_min: int = 1
    max_interval_min: int = 60
    active_window_sec: float = 60.0     # "Recent operation" window
    active_divisor: float = 4.0         # Base interval shrink factor after an operation
    min_active_interval_sec: float = 5.0
    error_backoff_factor: float = 0.5   # Per consecutive error
    max_backoff_multiplier: float = 5.0
    settle_delay_sec: float = 2.0       # Wait for the actuator before confirming


@dataclass
class Config:
    """Main application configuration."""

    # Glue cloud credentials and lock identification
    api_key: str = ""
    lock_id: str = ""

    # Per-device settings
    polling_interval: int | None = None  # Minutes, None = default

    api: ApiConfig = field(default_factory=ApiConfig)
    poll: PollConfig = field(default_factory=PollConfig)

    # Web dashboard
    web_port: int = DEFAULT_WEB_PORT
    web_host: str = "0.0.0.0"

    # Paths
    data_dir: str = DEFAULT_DATA_DIR

    @property
    def events_file(self) -> str:
        return os.path.join(self.data_dir, "events.jsonl")

    @property
    def config_file(self) -> str:
        return os.path.join(self.data_dir, "config.json")

    def get(self, key: str) -> str | None:
        """Settings-store lookup used by the reconciler host."""
        if key == SETTING_API_KEY:
            return self.api_key or None
        return None

    def device_settings(self) -> DeviceSettings:
        """Per-device settings accessor for the configured lock."""
        return DeviceSettings(self)

    def save(self) -> None:
        """Save configuration to disk."""
        os.makedirs(self.data_dir, exist_ok=True)
        data = {
            "api_key": self.api_key,
            "lock_id": self.lock_id,
            "polling_interval": self.polling_interval,
            "web_port": self.web_port,
            "web_host": self.web_host,
            "api": {
                "base_url": self.api.base_url,
                "version": self.api.version,
                "timeout_sec": self.api.timeout_sec,
                "operations_timeout_sec": self.api.operations_timeout_sec,
                "cache": {
                    "enabled": self.api.cache.enabled,
                    "ttl_sec": self.api.cache.ttl_sec,
                },
                "retry": {
                    "max_attempts": self.api.retry.max_attempts,
                    "initial_delay_sec": self.api.retry.initial_delay_sec,
                    "max_delay_sec": self.api.retry.max_delay_sec,
                },
            },
            "poll": {
                "default_interval_min": self.poll.default_interval_min,
                "min_interval_min": self.poll.min_interval_min,
                "max_interval_min": self.poll.max_interval_min,
                "active_window_sec": self.poll.active_window_sec,
                "settle_delay_sec": self.poll.settle_delay_sec,
            },
        }
        with open(self.config_file, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, config_file: str | None = None) -> Config:
        """Load configuration from disk."""
        path = config_file or DEFAULT_CONFIG_FILE
        config = cls()
        if os.path.exists(path):
            with open(path) as f:
                data = json.load(f)
            config.api_key = data.get("api_key", "")
            config.lock_id = data.get("lock_id", "")
            config.polling_interval = data.get("polling_interval")
            config.web_port = data.get("web_port", DEFAULT_WEB_PORT)
            config.web_host = data.get("web_host", "0.0.0.0")
            if "api" in data:
                api_data = data["api"]
                cache_data = api_data.get("cache", {})
                retry_data = api_data.get("retry", {})
                config.api = ApiConfig(
                    base_url=api_data.get("base_url", ApiConfig.base_url),
                    version=api_data.get("version", "v1"),
                    timeout_sec=api_data.get("timeout_sec", 10.0),
                    operations_timeout_sec=api_data.get(
                        "operations_timeout_sec", 30.0
                    ),
                    cache=CacheConfig(
                        enabled=cache_data.get("enabled", True),
                        ttl_sec=cache_data.get("ttl_sec", 30.0),
                    ),
                    retry=RetryConfig(
                        max_attempts=retry_data.get("max_attempts", 3),
                        initial_delay_sec=retry_data.get("initial_delay_sec", 1.0),
                        max_delay_sec=retry_data.get("max_delay_sec", 10.0),
                    ),
                )
            if "poll" in data:
                poll_data = data["poll"]
                config.poll = PollConfig(
                    default_interval_min=poll_data.get("default_interval_min", 20),
                    min_interval_min=poll_data.get("min_interval_min", 1),
                    max_interval_min=poll_data.get("max_interval_min", 60),
                    active_window_sec=poll_data.get("active_window_sec", 60.0),
                    settle_delay_sec=poll_data.get("settle_delay_sec", 2.0),
                )
            # Override data_dir if the config was loaded from a non-default path
            if config_file:
                config.data_dir = str(Path(config_file).parent)
        return config


class DeviceSettings:
    """Read access to the per-device settings stored in a Config."""

    def __init__(self, config: Config):
        self._config = config

    def get(self, key: str) -> Any:
        if key == SETTING_POLLING_INTERVAL:
            return self._config.polling_interval
        return None
