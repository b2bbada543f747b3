from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from outreach_pipeline.api.errors import (
    APIError,
    api_error_handler,
    pipeline_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from outreach_pipeline.runtime.service import PipelineError, PipelineService

from .routers.batches import router as batches_router
from .routers.health import router as health_router
from .routers.units import router as units_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("OUTREACH_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app(service: PipelineService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        svc = service or PipelineService()
        app.state.pipeline_service = svc
        app.state.worker_enabled = _env_bool("OUTREACH_ENABLE_WORKER", True)

        # Orphaned 'running' units from a previous process; opt-in (manual recovery is the default).
        reconcile = _env_bool("OUTREACH_RECONCILE_ON_STARTUP", svc.app_config.recovery.reconcile_on_startup)
        app.state.reconciled_units = svc.reconcile_orphaned_units() if reconcile else []

        resumed: list[str] = []
        if app.state.worker_enabled and _env_bool("OUTREACH_RESUME_ON_STARTUP", False):
            resumed = svc.resume_processing_batches()
        app.state.resumed_batches = resumed
        try:
            yield
        finally:
            svc.shutdown()

    app = FastAPI(title="Outreach Pipeline API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # CORS (for a dashboard in dev / local deployments).
    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(batches_router, prefix="/api/v1", tags=["batches"])
    app.include_router(units_router, prefix="/api/v1", tags=["units"])

    return app


app = create_app()
