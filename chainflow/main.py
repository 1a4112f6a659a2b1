"""FastAPI entry point for the workflow engine service."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import EngineSettings, configure_logging, get_settings
from .routers import workflows
from .workflows.engine import WorkflowEngine


def create_app(
    settings: Optional[EngineSettings] = None, engine: Optional[WorkflowEngine] = None
) -> FastAPI:
    """Create a FastAPI application serving the given workflow engine."""

    resolved_settings = settings or get_settings()
    configure_logging(resolved_settings.log_level)
    resolved_engine = engine or WorkflowEngine(settings=resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await resolved_engine.close()

    app = FastAPI(title=resolved_settings.app_name, lifespan=lifespan)
    app.state.engine = resolved_engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflows.router)

    @app.get("/health", tags=["health"])
    def health_check() -> Dict[str, object]:
        """Report service status and the configured store backend."""

        return {
            "status": "ok",
            "service": resolved_settings.app_name,
            "store": resolved_settings.store_backend,
            "workflows": len(resolved_engine.list_workflows()),
        }

    @app.get("/ready", tags=["health"])
    def readiness_check() -> Dict[str, object]:
        """Readiness check endpoint for Kubernetes."""

        return {
            "status": "ready",
            "service": resolved_settings.app_name,
            "workflows": [definition.id for definition in resolved_engine.list_workflows()],
        }

    return app
