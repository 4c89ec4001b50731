"""
Moana Service Entrypoint

FastAPI application for the control plane: cluster membership, volume
lifecycle and task tracking. On startup it opens the database, builds the
registry and orchestrator, and resumes tasks a previous process left active.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from moana.api import cluster, task, volume
from moana.config import API_PREFIX, Settings
from moana.database import create_database
from moana.registry import Registry
from moana.services.agent_channel import AgentChannel, HttpAgentChannel
from moana.services.task_orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, channel: Optional[AgentChannel] = None) -> FastAPI:
    """
    Build the control-plane app.

    Args:
        settings: configuration snapshot (environment when omitted)
        channel: node agent channel (HTTP to each node's agent when omitted)
    """
    settings = settings or Settings()
    app = FastAPI(title="Moana Control Plane")

    app.include_router(cluster.router, prefix=API_PREFIX)
    app.include_router(volume.router, prefix=API_PREFIX)
    app.include_router(task.router, prefix=API_PREFIX)

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException):
        # Unrouted paths answer with a plain JSON error; handled errors keep their detail
        if exc.status_code == 404 and exc.detail == "Not Found":
            return JSONResponse(status_code=404, content={"error": "Not Found"})
        return await http_exception_handler(request, exc)

    @app.on_event("startup")
    def startup_init():
        database = create_database(settings.database_url)
        registry = Registry(database)
        agent_channel = channel or HttpAgentChannel(
            ack_timeout_seconds=settings.agent_ack_timeout_seconds,
            default_port=settings.agent_port,
        )
        orchestrator = TaskOrchestrator(registry, agent_channel, settings=settings)

        app.state.database = database
        app.state.registry = registry
        app.state.orchestrator = orchestrator

        resumed = orchestrator.resume()
        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished task(s): {resumed}")
        logger.info("Moana service startup complete")

    @app.on_event("shutdown")
    def shutdown_cleanup():
        orchestrator = getattr(app.state, "orchestrator", None)
        if orchestrator:
            logger.info("Waiting for running tasks...")
            orchestrator.shutdown()
        database = getattr(app.state, "database", None)
        if database:
            database.dispose()
        logger.info("Moana service shutdown complete")

    @app.get("/")
    def root():
        return {
            "service": "moana",
            "message": "Moana control-plane service running",
        }

    return app


app = create_app()
