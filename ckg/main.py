"""
FastAPI Application Entry Point

Serves the knowledge graph contracts over HTTP with health checks, a
Prometheus metrics endpoint and CORS middleware.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from ckg import __version__
from ckg.api.graph import router as graph_router
from ckg.api.health import router as health_router
from ckg.config import Settings, settings as default_settings
from ckg.engine.knowledge_graph import KnowledgeGraph
from ckg.observability.logging import configure_logging


logger = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    graph: KnowledgeGraph | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings for the engine (module-level settings by default)
        graph: Pre-built engine; when given, the lifespan neither opens nor
            closes one

    Returns:
        Configured FastAPI app
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings)
        logger.info(
            "application.starting",
            environment=settings.environment,
            log_level=settings.log_level,
            version=__version__,
        )

        owned = graph is None
        app.state.graph = graph or await KnowledgeGraph.open(settings)
        logger.info("application.started", backend=app.state.graph.backend)

        yield

        logger.info("application.shutting_down")
        if owned:
            await app.state.graph.close()

    app = FastAPI(
        title="Knowledge Graph Core",
        description="Shared knowledge graph, scope resolution and task planning",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.graph = graph

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:8080",
            "https://localhost:8080",
            "http://localhost:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": "Knowledge Graph Core API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    app.include_router(health_router)
    app.include_router(graph_router)
    return app


app = create_app()
