from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends
from fastapi import Query
from pydantic import BaseModel, Field

from outreach_pipeline.api.dependencies import get_service
from outreach_pipeline.api.errors import APIError
from outreach_pipeline.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from outreach_pipeline.runtime.service import PipelineService


router = APIRouter()


class ResetRequest(BaseModel):
    reset_attempts: bool = Field(default=False)


class CancelRequest(BaseModel):
    reason: str = Field(default="")


# Declared before /units/{unit_id} so "stale" is not captured as an id.
@router.get("/units/stale")
def list_stale_units(
    older_than_s: float | None = Query(default=None, ge=0),
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    threshold = older_than_s if older_than_s is not None else service.app_config.recovery.stale_after_s
    return {"older_than_s": float(threshold), "items": service.find_stale_units(older_than_s=threshold)}


@router.get("/units/{unit_id}")
def get_unit(unit_id: str, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    return {"unit": service.get_unit(unit_id)}


@router.get("/units/{unit_id}/events")
def list_unit_events(
    unit_id: str,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    limits = service.app_config.limits
    page_size = int(limit) if limit is not None else int(limits.units_list_default_limit)
    if page_size > int(limits.units_list_max_limit):
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"limit must be <= {limits.units_list_max_limit}.",
            details={"limit": page_size},
        )
    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor, scope=f"events:{unit_id}")
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    page = service.list_events(
        unit_id,
        limit=page_size,
        cursor=(cursor_obj.created_at, cursor_obj.item_id) if cursor_obj is not None else None,
        event_types=event_type or None,
    )
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        created_at, event_id = next_cursor
        page["next_cursor"] = encode_cursor(
            Cursor(created_at=float(created_at), item_id=str(event_id), scope=f"events:{unit_id}")
        )
    return page


@router.post("/units/{unit_id}/run")
def run_unit(unit_id: str, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    # Synchronous: returns once the unit reached a terminal status.
    outcome = service.run_unit(unit_id)
    return {"outcome": asdict(outcome), "unit": service.get_unit(unit_id)}


@router.post("/units/{unit_id}/retry")
def retry_unit(
    unit_id: str,
    body: ResetRequest | None = None,
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    reset_attempts = bool(body.reset_attempts) if body is not None else False
    outcome = service.retry_unit(unit_id, reset_attempts=reset_attempts)
    return {"outcome": asdict(outcome), "unit": service.get_unit(unit_id)}


@router.post("/units/{unit_id}/cancel")
def cancel_unit(
    unit_id: str,
    body: CancelRequest | None = None,
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    reason = (body.reason if body is not None else "").strip()
    return asdict(service.cancel_unit(unit_id, reason=reason or None))


@router.post("/units/{unit_id}/reset")
def reset_unit(
    unit_id: str,
    body: ResetRequest | None = None,
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    reset_attempts = bool(body.reset_attempts) if body is not None else False
    return {"unit": service.reset_unit(unit_id, reset_attempts=reset_attempts)}
