"""FastAPI application entry point for the app builder backend.

This module initializes the FastAPI application with all middleware,
routers, and background loops configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

from agents import AgentNetworkGraph, LLMClient
from api import debug_router, router, websocket_router
from api.routes import set_coordinator, set_credit_ledger
from config import configure_logging, settings
from coordinator import WorkflowCoordinator
from correlator import QuestionCorrelator
from credits import CreditLedger
from events import get_event_bus
from models.database import MessageStore
from sandbox import SandboxProvider

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Wires the store, checkpointer, sandbox provider, agent network and
    coordinator; starts the question-expiry and sandbox-reaper loops; and
    re-drives runs a previous process left unfinished.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        debug_routes=settings.enable_debug_routes,
    )

    store = MessageStore(settings.database_path)
    await store.init()

    Path(settings.checkpoint_path).parent.mkdir(parents=True, exist_ok=True)
    async with AsyncSqliteSaver.from_conn_string(settings.checkpoint_path) as checkpointer:
        await checkpointer.setup()

        event_bus = get_event_bus()
        sandbox_provider = SandboxProvider()
        llm_client = LLMClient(event_bus=event_bus)
        correlator = QuestionCorrelator(store, event_bus)
        network = AgentNetworkGraph(
            correlator,
            sandbox_provider,
            event_bus,
            llm_client=llm_client,
            checkpointer=checkpointer,
        )
        coordinator = WorkflowCoordinator(
            store,
            sandbox_provider,
            event_bus,
            correlator,
            network,
            llm_client=llm_client,
        )
        credit_ledger = CreditLedger(store)

        set_coordinator(coordinator)
        set_credit_ledger(credit_ledger)

        app.state.coordinator = coordinator
        app.state.store = store

        expiry_task = await coordinator.start_question_expiry_loop()
        reaper_task = await sandbox_provider.start_reaper_loop()

        recovered = await coordinator.recover_incomplete_runs()
        logger.info("application_started", recovered_runs=recovered)

        yield

        logger.info("application_shutting_down")

        for task in (expiry_task, reaper_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(Exception):
                    await task

        # Runs in flight keep their checkpoints and resume on next startup
        await coordinator.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Sitesmith",
    description="Backend API for an AI website builder that gathers business "
    "details, asks follow-up questions and generates a live Next.js site.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["projects"])

if settings.enable_debug_routes:
    app.include_router(debug_router, tags=["debug"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to the API documentation."""
    return {
        "message": "Sitesmith API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
