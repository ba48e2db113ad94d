"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Cadence configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/cadence.db"))

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")

    # Task queue
    queue_poll_interval_ms: int = Field(default=60_000, ge=10_000, le=300_000)
    queue_batch_size: int = Field(default=10, ge=1, le=50)
    queue_task_timeout_ms: int = Field(default=300_000, ge=1, le=3_600_000)
    queue_auto_start: bool = Field(default=False)
    stale_task_threshold_ms: int = Field(default=3_600_000, ge=60_000)

    # External job service
    job_service_url: str = Field(default="")
    job_service_token: str = Field(default="")
    job_type_mappings: str = Field(
        default="deploy-agent=repo_deploy,import-agent=repo_import,clone-agent=repo_clone"
    )

    # Rate limits (scheduling operations)
    rate_limit_per_minute: int = Field(default=30)
    rate_limit_per_hour: int = Field(default=500)
    rate_limit_per_day: int = Field(default=5000)

    # Webhooks (job callbacks and trigger events)
    webhook_port: int = Field(default=8443)
    webhook_secret: str = Field(default="")

    # Notifications
    failure_webhook_url: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_job_type_mappings(self) -> dict[str, str]:
        """Parse JOB_TYPE_MAPPINGS (``owner=job_type,...``) into a dict."""
        mappings: dict[str, str] = {}
        for pair in self.job_type_mappings.split(","):
            owner, sep, job_type = pair.partition("=")
            if sep and owner.strip() and job_type.strip():
                mappings[owner.strip()] = job_type.strip()
        return mappings


settings = Settings()
