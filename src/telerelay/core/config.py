# src/telerelay/core/config.py
"""
Server configuration - Pydantic settings
"""
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..config_loader import build_settings

DEFAULT_PORT = 8470


class LogSinkConfig(BaseModel):
    """Log every ingested batch"""

    type: Literal["log"] = "log"


class JsonLinesSinkConfig(BaseModel):
    """Append samples to <path>/<agent>/<source>.jsonl"""

    type: Literal["jsonl"] = "jsonl"
    path: Path = Field(default=Path("logs"))


class HttpSinkConfig(BaseModel):
    """POST every batch as JSON to a webhook"""

    type: Literal["http"] = "http"
    url: str = Field(..., min_length=1)
    timeout_ms: int = Field(default=5000, gt=0)

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000


SinkConfig = Annotated[
    Union[LogSinkConfig, JsonLinesSinkConfig, HttpSinkConfig],
    Field(discriminator="type"),
]


class ServerConfig(BaseSettings):
    """Main server configuration"""

    listen_address: str = Field(default=f"0.0.0.0:{DEFAULT_PORT}")
    session_timeout_ms: int = Field(default=30000, gt=0)
    max_missed_heartbeats: int = Field(default=3, gt=0)

    sinks: List[SinkConfig] = Field(default_factory=lambda: [LogSinkConfig()])
    sink_retry_attempts: int = Field(default=3, ge=1)
    sink_retry_delay_ms: int = Field(default=200, ge=0)
    max_batch_samples: int = Field(default=10000, gt=0)
    loss_history_size: int = Field(default=100, gt=0)

    allowed_agents: Optional[List[str]] = None
    shared_key: Optional[str] = None
    compress: bool = True

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_prefix="TELERELAY_SERVER_", case_sensitive=False, extra="ignore")

    @field_validator("listen_address")
    @classmethod
    def _check_listen_address(cls, value: str) -> str:
        parse_listen_address(value)
        return value

    @property
    def host(self) -> str:
        return parse_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        return parse_listen_address(self.listen_address)[1]

    @property
    def session_timeout(self) -> float:
        return self.session_timeout_ms / 1000

    @property
    def sink_retry_delay(self) -> float:
        return self.sink_retry_delay_ms / 1000


def parse_listen_address(address: str) -> Tuple[str, int]:
    """Split "host:port" (port optional, IPv6 in brackets)"""
    address = address.strip()
    if not address:
        raise ValueError("listen_address must not be empty")

    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, _, port_text = address.partition(":")
    else:
        host, port_text = address, ""

    if not port_text:
        return host or "0.0.0.0", DEFAULT_PORT
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in listen_address: {port_text!r}")
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in listen_address: {port}")
    return host or "0.0.0.0", port


def load_config(path: Union[str, Path]) -> ServerConfig:
    """Load server configuration from a JSON file"""
    return build_settings(ServerConfig, path)
