from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Fallback credentials used when a request carries none
    default_session_id: str = Field(default="", alias="VITE_DEFAULT_SESSION_ID")
    default_xyq_session_id: str = Field(default="", alias="VITE_DEFAULT_XYQ_SESSION_ID")

    # Generation
    video_generation_timeout_ms: int = Field(default=45 * 60 * 1000)

    # Application
    debug: bool = Field(default=False)
    port: int = Field(default=3001)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    submit_rate_limit: str = Field(default="30/minute")

    # Scheduler
    scheduler_enabled: bool = Field(default=True)

    # Browser
    browser_headless: bool = Field(default=True)

    @property
    def video_generation_timeout_seconds(self) -> float:
        """Wall-clock limit for one generation job; non-positive values use the default."""
        if self.video_generation_timeout_ms > 0:
            return self.video_generation_timeout_ms / 1000
        return 45 * 60.0


class VendorCodesConfig:
    """Vendor status/fail codes from config.yml.

    These were observed on the live APIs and may drift; keep them in config.
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self.success_ret: str = str(data.get("success_ret", "0"))
        self.login_required_ret: str = str(data.get("login_required_ret", "1015"))
        self.insufficient_balance_ret: str = str(data.get("insufficient_balance_ret", "5000"))
        self.security_check_ret: str = str(data.get("security_check_ret", "4010"))
        self.content_filtered_fail_code: int = int(data.get("content_filtered_fail_code", 2038))
        self.history_running_status: int = int(data.get("history_running_status", 20))
        self.history_failed_status: int = int(data.get("history_failed_status", 30))
        self.agent_completed_state: str = str(data.get("agent_completed_state", "3"))
        self.agent_failed_state: str = str(data.get("agent_failed_state", "4"))
        self.upload_success_status: int = int(data.get("upload_success_status", 2000))


class PollingConfig:
    """Polling cadence for the generation orchestrators."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.warmup_seconds: float = data.get("warmup_seconds", 5.0)
        self.interval_seconds: float = data.get("interval_seconds", 2.0)
        self.max_interval_steps: int = data.get("max_interval_steps", 5)
        self.missing_record_max_seconds: float = data.get("missing_record_max_seconds", 30.0)
        self.agent_interval_seconds: float = data.get("agent_interval_seconds", 2.0)
        self.refresh_pause_seconds: float = data.get("refresh_pause_seconds", 1.2)


class BrowserConfig:
    """Browser session pool settings."""

    def __init__(self, data: dict[str, Any], settings: "Settings") -> None:
        self.headless: bool = data.get("headless", settings.browser_headless)
        self.idle_timeout_seconds: float = data.get("idle_timeout_seconds", 600.0)
        self.navigation_timeout_ms: int = data.get("navigation_timeout_ms", 45000)
        self.sdk_ready_timeout_ms: int = data.get("sdk_ready_timeout_ms", 30000)
        self.blocked_resource_types: list[str] = data.get(
            "blocked_resource_types", ["image", "font", "media"]
        )


class TasksConfig:
    """Task registry retention settings."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.max_age_seconds: float = data.get("max_age_seconds", 30 * 60.0)
        self.terminal_retention_seconds: float = data.get("terminal_retention_seconds", 300.0)
        self.sweep_interval_seconds: float = data.get("sweep_interval_seconds", 60.0)


class UploadsConfig:
    """Limits for reference image attachments."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.max_files: int = data.get("max_files", 5)
        self.max_file_size_mb: int = data.get("max_file_size_mb", 20)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class AppConfig:
    """Combined application configuration from .env and config.yml."""

    def __init__(self) -> None:
        self.settings = Settings()
        self._load_yaml()

    def _load_yaml(self) -> None:
        config_path = Path("config.yml")
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        else:
            data = {}

        self.vendor_codes = VendorCodesConfig(data.get("vendor_codes", {}))
        self.polling = PollingConfig(data.get("polling", {}))
        self.browser = BrowserConfig(data.get("browser", {}), self.settings)
        self.tasks = TasksConfig(data.get("tasks", {}))
        self.uploads = UploadsConfig(data.get("uploads", {}))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@lru_cache
def get_config() -> AppConfig:
    """Get cached full config instance."""
    return AppConfig()
