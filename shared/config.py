"""
Type-safe configuration for the flow engine using Pydantic Settings.

This module provides a centralized, type-safe configuration system
that loads from environment variables and .env files.

Usage:
    from shared.config import config

    if config.strict_conditions:
        ...
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlowEngineConfig(BaseSettings):
    """
    Central configuration for the flow engine service and worker.

    All configuration is loaded from environment variables or .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ============================================================================
    # Logging
    # ============================================================================

    log_level: str = Field(default="INFO", description="Root level for service loggers (DEBUG, INFO, WARNING...)")

    # ============================================================================
    # Execution Engine
    # ============================================================================

    strict_conditions: bool = Field(
        default=False,
        description="If True, a branching node that matches no rule and has no default edge fails the step "
        "instead of completing the execution.",
    )

    # ============================================================================
    # Delay Scheduler
    # ============================================================================

    delay_poller_enabled: bool = Field(default=True, description="Run the delay poller inside the taskiq worker")
    delay_poller_interval_seconds: int = Field(default=60, description="Seconds between delay poller ticks")
    delay_poller_max_batch_size: int = Field(default=50, description="Max due delay tasks claimed per tick")

    # ============================================================================
    # Notifications
    # ============================================================================

    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Endpoint that delivers patient messages. Notifications are skipped when unset.",
    )
    notification_timeout_seconds: float = Field(default=10.0, description="HTTP timeout for notification calls")
    form_start_template: str = Field(default="novo_formulario", description="Template sent when a form opens")
    form_end_template: str = Field(default="formulario_concluido", description="Template sent when a form closes")

    # ============================================================================
    # Worker
    # ============================================================================

    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for the taskiq broker")

    @property
    def is_notification_configured(self) -> bool:
        """Check if outbound notifications have a destination."""
        return bool(self.notification_webhook_url)

# ============================================================================
# Global Config Instance
# ============================================================================

config = FlowEngineConfig()
