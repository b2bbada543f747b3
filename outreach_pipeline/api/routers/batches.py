from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Header
from fastapi import Query
from pydantic import BaseModel, Field

from outreach_pipeline.api.dependencies import get_service, require_worker
from outreach_pipeline.api.errors import APIError, api_error_from_pipeline
from outreach_pipeline.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from outreach_pipeline.runtime.service import PipelineError, PipelineService
from outreach_pipeline.storage.sqlite_store import BATCH_STATUSES, UNIT_STATUSES, SQLiteStore


router = APIRouter()


class UnitInput(BaseModel):
    model_config = {"extra": "allow"}

    profile_ref: str = Field(min_length=1, description="External profile identifier (e.g. a profile URL).")
    name: str | None = None
    company: str | None = None
    title: str | None = None


class CreateBatchRequest(BaseModel):
    kind: str = Field(description="discovery | enrichment | artifact")
    inputs: list[UnitInput] = Field(min_length=1)
    name: str = Field(default="")
    max_attempts: int | None = Field(default=None, ge=1)
    dry_run: bool = Field(default=False)
    overrides: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: str = Field(default="")


class RetryFailedRequest(BaseModel):
    reset_attempts: bool = Field(default=False)


def _check_statuses(values: list[str] | None, allowed: set[str], *, field: str) -> None:
    bad = [v for v in (values or []) if v not in allowed]
    if bad:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unknown {field} value(s).",
            details={field: bad, "allowed": sorted(allowed)},
        )


@router.get("/batches")
def list_batches(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    kind: str | None = Query(default=None),
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    _check_statuses(status, BATCH_STATUSES, field="status")
    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor, scope="batches")
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    page = service.list_batches(
        limit=int(limit),
        cursor=(cursor_obj.created_at, cursor_obj.item_id) if cursor_obj is not None else None,
        statuses=status or None,
        kind=kind or None,
    )
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        created_at, batch_id = next_cursor
        page["next_cursor"] = encode_cursor(
            Cursor(created_at=float(created_at), item_id=str(batch_id), scope="batches")
        )
    return page


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    return {"batch": service.get_batch(batch_id)}


@router.get("/batches/{batch_id}/units")
def list_batch_units(
    batch_id: str,
    status: list[str] | None = Query(default=None),
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    _check_statuses(status, UNIT_STATUSES, field="status")
    return {"items": service.list_units(batch_id, statuses=status or None)}


@router.post("/batches/{batch_id}/start", dependencies=[Depends(require_worker)])
def start_batch(batch_id: str, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    return asdict(service.start_batch(batch_id))


@router.post("/batches/{batch_id}/cancel")
def cancel_batch(
    batch_id: str,
    body: CancelRequest | None = None,
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    reason = (body.reason if body is not None else "").strip()
    return asdict(service.cancel_batch(batch_id, reason=reason or None))


@router.post("/batches/{batch_id}/retry-failed", dependencies=[Depends(require_worker)])
def retry_failed(
    batch_id: str,
    body: RetryFailedRequest | None = None,
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    reset_attempts = bool(body.reset_attempts) if body is not None else False
    return asdict(service.retry_failed(batch_id, reset_attempts=reset_attempts))


@router.post("/batches/{batch_id}/finalize")
def finalize_batch(batch_id: str, service: PipelineService = Depends(get_service)) -> dict[str, Any]:
    status = service.finalize_batch(batch_id)
    return {"batch_id": batch_id, "status": status, "finalized": status is not None}


@router.post("/batches")
def create_batch(
    body: CreateBatchRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    service: PipelineService = Depends(get_service),
) -> dict[str, Any]:
    if not bool(body.dry_run) and not os.getenv("OPENAI_API_KEY", "").strip():
        # Fail fast rather than queueing doomed units.
        raise APIError(
            status_code=503,
            code="dependency_unavailable",
            message="Missing required runtime configuration for normal batches.",
            details={"missing": ["OPENAI_API_KEY"]},
        )

    # Idempotency: hash the *raw* request body (not the derived defaults).
    req_obj = body.model_dump(mode="json")
    req_json = json.dumps(req_obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

    store = SQLiteStore(service.db_path)
    try:
        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != request_hash:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            try:
                response = service.create_batch(
                    kind=body.kind,
                    inputs=[i.model_dump(mode="json", exclude_none=True) for i in body.inputs],
                    name=body.name,
                    max_attempts=body.max_attempts,
                    dry_run=bool(body.dry_run),
                    overrides=dict(body.overrides or {}),
                    store=store,
                    commit=False,
                )
            except PipelineError as e:
                raise api_error_from_pipeline(e) from e

            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=request_hash,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )
    finally:
        store.close()

    return response
