"""
Runtime settings.

Values come from the environment (prefix ``LOADBENCH_``) or a local ``.env``
file. Scenario-level options live in ``loadbench.models.test_config``; these are
the knobs that apply to every run.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOADBENCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = Field("INFO", description="Root log level for the CLI")

    # Scheduling
    TICK_INTERVAL_MS: int = Field(
        100, ge=1, description="Scheduler tick (desired concurrency recompute)"
    )
    THRESHOLD_EVAL_INTERVAL_MS: int = Field(
        1000, ge=10, description="Continuous threshold evaluation interval"
    )
    DEFAULT_GRACEFUL_STOP_MS: int = Field(
        30_000, ge=0, description="Default drain bound when a scenario stops"
    )
    MAX_WORKERS: int = Field(
        10_000, ge=1, description="Hard cap on concurrent workers per scenario"
    )
    SYNC_WORKLOAD_THREADS: int = Field(
        64, ge=1, description="Threads per scenario for non-async workloads"
    )

    # Reference workloads
    TARGET_BASE_URL: str = Field(
        "http://localhost:3000", description="Base URL of the contact API"
    )
    HTTP_TIMEOUT_SECONDS: float = Field(30.0, gt=0, description="Request timeout")

    # Templates
    TEMPLATES_DIR: Optional[Path] = Field(
        None, description="Extra directory searched for YAML option templates"
    )


settings = Settings()
