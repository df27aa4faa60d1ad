"""Configuration management for the APEX task engine."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (``APEX_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="APEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "APEX"
    debug: bool = False
    log_level: str = "INFO"

    # Paths
    project_path: Path = Field(
        default=Path("."),
        description="Project the tasks operate on",
    )
    database_path: Path = Field(
        default=Path(".apex/apex.db"),
        description="SQLite database holding task records",
    )
    workspaces_path: Path = Field(
        default=Path(".apex/workspaces"),
        description="Where worktree and directory workspaces are created",
    )

    # Workspace isolation
    workspace_strategy: str = Field(
        default="container",
        description="Default isolation strategy: container, worktree, directory or none",
    )
    keep_workspace_on_failure: bool = Field(
        default=False,
        description="Retain the workspace of a failed task for inspection",
    )

    # Container defaults
    container_image: str = Field(
        default="node:20-bullseye",
        description="Default image for container workspaces",
    )
    container_cpu: Optional[float] = Field(default=2.0, description="CPU limit (cores)")
    container_memory: Optional[str] = Field(default="4g", description="Memory limit")
    container_network_mode: str = "bridge"
    container_name_prefix: str = "apex-task"
    container_auto_remove: bool = False
    container_operation_timeout: float = Field(
        default=30.0,
        description="Seconds to wait for create/start/remove/exec",
    )
    container_stop_timeout: int = Field(
        default=10,
        description="Grace period in seconds before a stopped container is killed",
    )
    events_monitoring: bool = Field(
        default=True,
        description="Watch the engine event stream for container deaths",
    )
    health_monitoring: bool = Field(
        default=True,
        description="Poll managed containers for health status changes",
    )
    health_check_interval: float = Field(default=30.0, description="Seconds between health checks")
    health_max_failures: int = Field(
        default=3,
        description="Failed checks in a row before a container is reported unhealthy",
    )

    # Task limits
    max_retries: int = Field(default=3, description="Default retries per task")
    retry_delay_seconds: float = Field(default=2.0, description="Delay before a retry")
    retry_backoff_factor: float = Field(
        default=1.0,
        description="Multiplier applied to the delay on each retry (1.0 = fixed)",
    )
    max_concurrent_tasks: int = 3
    max_cost_per_task: float = Field(default=10.0, description="Budget in USD")
    branch_prefix: str = "apex/"

    # Pricing (USD per million tokens)
    input_token_price: float = 3.0
    output_token_price: float = 15.0

    # HTTP API
    host: str = "0.0.0.0"
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
