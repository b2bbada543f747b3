from __future__ import annotations

import threading

from fastapi import Request

from outreach_pipeline.api.errors import APIError
from outreach_pipeline.config.load_config import ConfigError
from outreach_pipeline.runtime.service import PipelineService


_SERVICE_INIT_LOCK = threading.Lock()


def get_service(request: Request) -> PipelineService:
    """FastAPI dependency: the process-wide PipelineService (lazy init).

    The service owns the in-process batch tasks, so there must be exactly one per
    FastAPI process. The lifespan normally creates it; this covers apps used
    without a lifespan.
    """
    cached = getattr(request.app.state, "pipeline_service", None)
    if isinstance(cached, PipelineService):
        return cached

    with _SERVICE_INIT_LOCK:
        cached2 = getattr(request.app.state, "pipeline_service", None)
        if isinstance(cached2, PipelineService):
            return cached2
        try:
            service = PipelineService()
        except ConfigError as e:
            raise APIError(status_code=500, code="internal", message=f"Invalid configuration: {e}") from e
        request.app.state.pipeline_service = service
        return service


def require_worker(request: Request) -> None:
    """FastAPI dependency for endpoints that spawn background batch tasks."""
    if not bool(getattr(request.app.state, "worker_enabled", True)):
        raise APIError(
            status_code=503,
            code="dependency_unavailable",
            message="Background worker is disabled (OUTREACH_ENABLE_WORKER=0).",
        )
