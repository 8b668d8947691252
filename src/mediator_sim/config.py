"""Runtime settings for the mediator load simulation."""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Process-wide settings.

    Values come from ``MEDIATOR_SIM_*`` environment variables or a local
    ``.env`` file. Per-run parameters live in ``SimulationConfig`` instead.
    """

    # Ledger store
    redis_url: str = ""
    scan_batch_size: int = 1000
    thread_index_ttl_seconds: int = 86_400

    # Concurrency ceilings
    max_concurrent_messages: int = 5
    max_concurrent_agent_creation: int = 2

    # Run lifecycle timing
    cleanup_delay_ms: int = 5000
    agent_ready_delay_ms: int = 500  # per created agent
    mesh_settle_delay_ms: int = 1000
    interrupted_run_grace_ms: int = 60_000

    # Connection mesh
    connection_max_attempts: int = 3
    connection_retry_delay_ms: int = 2000
    connection_timeout_ms: int = 5000

    # Delivery tracking
    delivery_lookup_attempts: int = 3
    delivery_lookup_delay_ms: int = 50

    # Reporting
    reports_dir: Path = Path("reports")
    under_delivery_warning_ratio: float = 0.5

    # Identity provider: "simulated" or "package.module:ClassName"
    identity_provider: str = "simulated"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    agent_log_dir: Optional[Path] = None

    model_config = {
        "env_prefix": "MEDIATOR_SIM_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def resolve_redis_url(self) -> "Settings":
        """Fall back to the conventional REDIS_URL, then to localhost."""
        if not self.redis_url:
            self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        return self

    @model_validator(mode="after")
    def check_limits(self) -> "Settings":
        if self.max_concurrent_messages < 1:
            raise ValueError("max_concurrent_messages must be >= 1")
        if self.max_concurrent_agent_creation < 1:
            raise ValueError("max_concurrent_agent_creation must be >= 1")
        if self.connection_max_attempts < 1:
            raise ValueError("connection_max_attempts must be >= 1")
        if self.scan_batch_size < 1:
            raise ValueError("scan_batch_size must be >= 1")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
