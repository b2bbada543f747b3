from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends
from fastapi import Request

from outreach_pipeline.api.dependencies import get_service
from outreach_pipeline.runtime.service import PipelineService
from outreach_pipeline.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "outreach-pipeline",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/worker")
def system_worker(request: Request, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    # Minimal runtime observability for dashboards and debugging.
    snapshot = service.status_snapshot()
    return {
        "ts": time.time(),
        "worker": {
            "enabled": bool(getattr(request.app.state, "worker_enabled", True)),
            **snapshot["tasks"],
        },
        "queue": {
            "batches_by_status": snapshot["batches_by_status"],
            "units_by_status": snapshot["units_by_status"],
        },
        "startup": {
            "reconciled_units": list(getattr(request.app.state, "reconciled_units", [])),
            "resumed_batches": list(getattr(request.app.state, "resumed_batches", [])),
        },
    }
