"""
telerelay Server API

FastAPI application hosting the agent websocket endpoint and the status
routes.
"""
from typing import Optional

import structlog
from fastapi import FastAPI, WebSocket

from ... import __version__
from ..config import ServerConfig
from .agent_handler import handle_agent_websocket
from .lifespan import lifespan
from .routes import router

logger = structlog.get_logger()


def setup_websocket_endpoints(app: FastAPI) -> None:
    """Agent sessions are served on /ws"""

    @app.websocket("/ws")
    async def agent_websocket_endpoint(websocket: WebSocket):
        await handle_agent_websocket(websocket, websocket.app.state.agent_handler)


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or ServerConfig()

    app = FastAPI(
        title="telerelay server",
        description="Telemetry relay: agent sessions and ingestion status",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.state.config = config

    app.include_router(router)
    setup_websocket_endpoints(app)

    logger.info("FastAPI application configured", title=app.title, version=app.version)
    return app
