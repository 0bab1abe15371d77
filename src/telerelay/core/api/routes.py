"""
Status Routes for telerelay Server

Read-only view of connected agents and ingestion counters.
"""
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, status

from ... import __version__
from ..ingestion import AgentIngestState, IngestionPipeline
from ..registry import ConnectionRegistry
from .models import AgentDetail, AgentSummary, APIResponse, HealthResponse, ResponseStatus, StatsResponse

router = APIRouter()

# Track service start time for uptime calculation
SERVICE_START_TIME = time.time()


def _summary(
    identity: str,
    session_info: Optional[Dict[str, Any]],
    ingest_state: Optional[AgentIngestState],
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"agent_id": identity, "connected": session_info is not None}
    if session_info:
        summary.update(
            session_id=session_info["session_id"],
            state=session_info["state"],
            connected_at=session_info["connected_at"],
            remote_address=session_info["remote_address"],
            capabilities=session_info["capabilities"],
            missed_heartbeats=session_info["missed_heartbeats"],
        )
    if ingest_state:
        summary.update(ingest_state.model_dump(exclude={"identity"}))
    return summary


async def _collect_agents(registry: ConnectionRegistry, ingestion: IngestionPipeline) -> List[Dict[str, Any]]:
    sessions = {info["agent_id"]: info for info in await registry.connected_agents()}
    states = {state.identity: state for state in ingestion.agent_states()}
    return [
        _summary(identity, sessions.get(identity), states.get(identity))
        for identity in sorted(set(sessions) | set(states))
    ]


@router.get("/health", response_model=APIResponse[HealthResponse])
async def health_check(request: Request):
    """Liveness and connected agent count"""
    health = HealthResponse(
        version=__version__,
        uptime_seconds=int(time.time() - SERVICE_START_TIME),
        connected_agents=await request.app.state.registry.count(),
    )
    return APIResponse(status=ResponseStatus.SUCCESS, message="Health check completed", data=health)


@router.get("/api/agents", response_model=APIResponse[List[AgentSummary]])
async def list_agents(request: Request):
    """Connected agents, plus agents that delivered batches earlier"""
    agents = await _collect_agents(request.app.state.registry, request.app.state.ingestion)
    return APIResponse(
        status=ResponseStatus.SUCCESS,
        message=f"{len(agents)} agents",
        data=[AgentSummary(**agent) for agent in agents],
    )


@router.get("/api/agents/{agent_id}", response_model=APIResponse[AgentDetail])
async def get_agent(agent_id: str, request: Request):
    """One agent with its recent loss events"""
    registry: ConnectionRegistry = request.app.state.registry
    ingestion: IngestionPipeline = request.app.state.ingestion

    session = await registry.lookup(agent_id)
    ingest_state = ingestion.agent_state(agent_id)
    if session is None and ingest_state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Agent '{agent_id}' not found")

    detail = AgentDetail(
        **_summary(agent_id, session.info() if session else None, ingest_state),
        loss_events=ingestion.loss_events(agent_id),
    )
    return APIResponse(status=ResponseStatus.SUCCESS, message="Agent found", data=detail)


@router.get("/api/stats", response_model=APIResponse[StatsResponse])
async def get_stats(request: Request):
    """Ingestion counters"""
    stats = StatsResponse(
        **request.app.state.ingestion.stats(),
        connected_agents=await request.app.state.registry.count(),
    )
    return APIResponse(status=ResponseStatus.SUCCESS, message="Ingestion statistics", data=stats)
