"""Centralized settings for the rollout orchestrator.

Uses pydantic-settings to load from environment variables (prefixed ROLLOUT_)
with defaults matching the production rollout policy.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.rollout.config import DEFAULT_ROLLOUT_STEPS, Environment, RolloutConfig


class Settings(BaseSettings):
    """Rollout settings loaded from environment variables."""

    # --- Endpoints & credentials ---
    production_url: str = ""
    canary_url: str = ""
    production_api_key: str = ""
    deploy_api_url: str = ""
    update_server_url: str = "https://updates.example.com"
    update_server_key: str = ""
    release_channel: str = "stable"
    webhook_url: str = ""

    # --- Rollout policy ---
    canary_percent: int = 10
    canary_duration_sec: int = 120
    canary_interval_sec: int = 15
    rollout_steps: list[int] = Field(default_factory=lambda: list(DEFAULT_ROLLOUT_STEPS))
    inter_step_delay_sec: int = 300
    auto_rollback_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "auto_rollback_enabled",
            "ROLLOUT_AUTO_ROLLBACK_ENABLED",
            "AUTO_ROLLBACK_PRODUCTION",
        ),
    )
    rollback_version: Optional[str] = None

    # --- Health probes ---
    probe_timeout_sec: float = 30.0
    concurrent_probes: bool = False
    latency_threshold_ms: float = 500.0
    deployment_timeout_sec: float = 600.0

    # --- Runtime ---
    target_key: str = "production"
    state_dir: str = ".rollout_state"
    build_dir: str = "dist"
    log_level: LogLevel = LogLevel.INFO
    log_format: LogFormat = LogFormat.CONSOLE

    model_config = {
        "env_prefix": "ROLLOUT_",
        "env_file": ".env",
        "extra": "ignore",
    }

    def to_rollout_config(self) -> RolloutConfig:
        return RolloutConfig(
            canary_percent=self.canary_percent,
            canary_duration_sec=self.canary_duration_sec,
            canary_interval_sec=self.canary_interval_sec,
            rollout_steps=tuple(self.rollout_steps),
            inter_step_delay_sec=self.inter_step_delay_sec,
            auto_rollback_enabled=self.auto_rollback_enabled,
            probe_timeout_sec=self.probe_timeout_sec,
            concurrent_probes=self.concurrent_probes,
        )

    def to_logging_config(self) -> LoggingConfig:
        return LoggingConfig(level=self.log_level, format=self.log_format)

    def base_urls(self) -> Dict[Environment, str]:
        """Health endpoints per environment; canary falls back to production."""
        return {
            Environment.PRODUCTION: self.production_url,
            Environment.CANARY: self.canary_url or self.production_url,
        }

    def required_settings(self) -> Dict[str, str]:
        """Settings that must be present before anything is deployed."""
        return {
            "ROLLOUT_PRODUCTION_URL": self.production_url,
            "ROLLOUT_PRODUCTION_API_KEY": self.production_api_key,
            "ROLLOUT_UPDATE_SERVER_KEY": self.update_server_key,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
