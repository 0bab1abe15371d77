"""
FastAPI Application Lifespan Management

Builds the registry, the ingestion pipeline and the agent session handler on
startup; closes every session and sink on shutdown.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from ..ingestion import IngestionPipeline
from ..registry import ConnectionRegistry
from ..sinks import build_sinks
from .agent_handler import AgentSessionHandler

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Startup
    config = app.state.config
    logger.info("Starting telerelay server...", listen_address=config.listen_address)

    registry = ConnectionRegistry()
    ingestion = IngestionPipeline(
        build_sinks(config.sinks),
        max_batch_samples=config.max_batch_samples,
        retry_attempts=config.sink_retry_attempts,
        retry_delay=config.sink_retry_delay,
        loss_history_size=config.loss_history_size,
    )
    app.state.registry = registry
    app.state.ingestion = ingestion
    app.state.agent_handler = AgentSessionHandler(config, registry, ingestion)

    logger.info("telerelay server started",
                sinks=[sink.name for sink in ingestion.sinks],
                encrypted=app.state.agent_handler.codec.encrypted)

    yield

    # Shutdown
    logger.info("Shutting down telerelay server...")
    await registry.close_all()
    await ingestion.close()
    logger.info("telerelay server shutdown complete")
