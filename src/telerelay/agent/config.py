"""Agent configuration management with Pydantic settings."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..config_loader import build_settings


class CollectorSpec(BaseModel):
    """One scheduled collection task."""

    name: str = Field(..., min_length=1)
    interval_ms: int = Field(default=10000, gt=0)
    options: Dict[str, Any] = Field(default_factory=dict)

    @property
    def interval(self) -> float:
        return self.interval_ms / 1000


class BackoffConfig(BaseModel):
    """Reconnect backoff settings."""

    initial_ms: int = Field(default=500, gt=0)
    max_ms: int = Field(default=30000, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "BackoffConfig":
        if self.max_ms < self.initial_ms:
            raise ValueError("max_ms must be greater than or equal to initial_ms")
        return self


class AgentConfig(BaseSettings):
    """Main agent configuration."""

    # Server connection
    endpoint: str = Field(..., min_length=1)
    agent_identity: str = Field(..., min_length=1)
    shared_key: Optional[str] = None
    compress: bool = True

    # Collection
    collectors: List[CollectorSpec] = Field(
        default_factory=lambda: [CollectorSpec(name="cpu", interval_ms=10000)]
    )
    max_queue_size: int = Field(default=10000, gt=0)

    # Delivery
    batch_interval_ms: int = Field(default=5000, gt=0)
    max_batch_size: int = Field(default=500, gt=0)
    ack_timeout_ms: int = Field(default=10000, gt=0)
    handshake_timeout_ms: int = Field(default=10000, gt=0)
    heartbeat_interval_ms: int = Field(default=5000, gt=0)
    reconnect_backoff: BackoffConfig = Field(default_factory=BackoffConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="TELERELAY_AGENT_",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def batch_interval(self) -> float:
        return self.batch_interval_ms / 1000

    @property
    def ack_timeout(self) -> float:
        return self.ack_timeout_ms / 1000

    @property
    def handshake_timeout(self) -> float:
        return self.handshake_timeout_ms / 1000

    @property
    def heartbeat_interval(self) -> float:
        return self.heartbeat_interval_ms / 1000


def load_config(path: Union[str, Path]) -> AgentConfig:
    """Load agent configuration from a JSON file."""
    return build_settings(AgentConfig, path)
