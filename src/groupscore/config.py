"""
Configuration management for the contribution scoring engine.

Only infrastructure settings live here. Scoring weights and thresholds are
per-project and travel with each computation as a ProjectConfig.
"""
import os
from typing import Optional
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class NotificationConfig:
    """Outbound notification webhook configuration."""
    webhook_url: Optional[str]
    api_key: Optional[str] = None
    timeout: int = 10
    max_retries: int = 3
    backoff_factor: float = 0.5
    max_pending: int = 100


@dataclass
class EngineConfig:
    """Recompute engine settings."""
    max_workers: int = 4
    recompute_interval_seconds: int = 3600


class ConfigManager:
    """Manages application configuration."""

    def __init__(self):
        self.notification = self._load_notification_config()
        self.engine = self._load_engine_config()

    def _load_notification_config(self) -> NotificationConfig:
        """Load notification configuration from environment."""
        return NotificationConfig(
            webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
            api_key=os.getenv("NOTIFY_API_KEY"),
            timeout=int(os.getenv("NOTIFY_TIMEOUT", "10")),
            max_retries=int(os.getenv("NOTIFY_MAX_RETRIES", "3")),
            backoff_factor=float(os.getenv("NOTIFY_BACKOFF_FACTOR", "0.5")),
            max_pending=int(os.getenv("NOTIFY_MAX_PENDING", "100"))
        )

    def _load_engine_config(self) -> EngineConfig:
        """Load engine configuration from environment."""
        return EngineConfig(
            max_workers=int(os.getenv("ENGINE_MAX_WORKERS", "4")),
            recompute_interval_seconds=int(os.getenv("RECOMPUTE_INTERVAL_SECONDS", "3600"))
        )

    def validate(self) -> list:
        """Validate configuration and return any errors."""
        errors = []

        if self.notification.max_retries < 0:
            errors.append("Notification max retries cannot be negative")

        if self.notification.timeout <= 0:
            errors.append("Notification timeout must be positive")

        if self.notification.max_pending <= 0:
            errors.append("Notification max pending must be positive")

        if self.engine.max_workers <= 0:
            errors.append("Engine max workers must be positive")

        if self.engine.recompute_interval_seconds <= 0:
            errors.append("Recompute interval must be positive")

        return errors


config = ConfigManager()
