"""
API Response Models

Pydantic models for the status API.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ..ingestion import LossEvent

T = TypeVar("T")


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class APIResponse(BaseModel, Generic[T]):
    """Standard API response wrapper"""
    status: ResponseStatus
    message: str
    data: Optional[T] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthResponse(BaseModel):
    """Health check response"""
    service_name: str = "telerelay server"
    version: str
    status: str = "healthy"
    uptime_seconds: int
    connected_agents: int


class AgentSummary(BaseModel):
    """One agent as seen by the registry and the ingestion pipeline"""
    agent_id: str
    connected: bool
    session_id: Optional[str] = None
    state: Optional[str] = None
    connected_at: Optional[str] = None
    remote_address: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    missed_heartbeats: int = 0
    high_water_mark: int = 0
    batches: int = 0
    samples: int = 0
    duplicates: int = 0
    losses: int = 0
    last_batch_at: Optional[datetime] = None


class AgentDetail(AgentSummary):
    """Agent summary plus its recent sequence gaps"""
    loss_events: List[LossEvent] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """Ingestion counters"""
    batches_accepted: int
    batches_duplicate: int
    batches_rejected: int
    batches_failed: int
    samples_forwarded: int
    agents_seen: int
    connected_agents: int
