from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

from outreach_pipeline.agents.registry import build_runner
from outreach_pipeline.agents.types import AgentRunner
from outreach_pipeline.config.load_config import AppConfig, PipelineConfig, load_app_config
from outreach_pipeline.runtime.cancellation import CancellationPropagator, CancelResult
from outreach_pipeline.runtime.finalizer import BatchFinalizer
from outreach_pipeline.runtime.pool import ConcurrencyPool, PoolReport
from outreach_pipeline.runtime.retry import ProgressListener, RetryController, UnitOutcome
from outreach_pipeline.runtime.worker import BatchTaskRunner
from outreach_pipeline.storage.sqlite_store import (
    BATCH_KINDS,
    SQLiteStore,
    batch_to_item,
    default_db_path,
    unit_to_item,
)
from outreach_pipeline.utils.cancel import CancellationToken


RunnerFactory = Callable[[str, dict[str, Any]], AgentRunner]


class PipelineError(RuntimeError):
    """Base class for entry-point precondition failures."""


class NotFoundError(PipelineError):
    pass


class ConflictError(PipelineError):
    pass


class InvalidArgumentError(PipelineError):
    pass


@dataclass(frozen=True)
class StartResult:
    batch_id: str
    status: str
    started: bool
    unit_ids: list[str] = field(default_factory=list)


class PipelineService:
    """Entry points used by the HTTP API and the CLI.

    Every entry point is safe to call while an earlier invocation may still be
    in flight: a live in-process task makes `start_batch` a no-op, and units are
    only ever claimed through a conditional `pending -> running` transition.
    Batch runs execute on background threads (`BatchTaskRunner`) and report
    solely through the store.
    """

    def __init__(
        self,
        *,
        db_path: str | Path | None = None,
        app_config: AppConfig | None = None,
        runner_factory: RunnerFactory | None = None,
        sleep: Callable[[float], None] | None = None,
        on_progress: ProgressListener | None = None,
        tasks: BatchTaskRunner | None = None,
    ) -> None:
        self._db_path = str(db_path or default_db_path())
        self._app_config = app_config or load_app_config()
        self._runner_factory = runner_factory or self._default_runner_factory
        self._sleep = sleep
        self._on_progress = on_progress
        self._tasks = tasks or BatchTaskRunner()
        self._finalizer = BatchFinalizer()
        self._propagator = CancellationPropagator()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def app_config(self) -> AppConfig:
        return self._app_config

    @property
    def tasks(self) -> BatchTaskRunner:
        return self._tasks

    @contextmanager
    def _open_store(self) -> Iterator[SQLiteStore]:
        store = SQLiteStore(self._db_path)
        try:
            yield store
        finally:
            store.close()

    def _default_runner_factory(self, kind: str, config_snapshot: dict[str, Any]) -> AgentRunner:
        return build_runner(kind, app_config=self._app_config, dry_run=bool(config_snapshot.get("dry_run", False)))

    # --- Construction helpers
    def _batch_context(self, batch_row: Any) -> tuple[str, dict[str, Any], PipelineConfig]:
        kind = str(batch_row["kind"])
        snapshot = json.loads(str(batch_row["config_json"] or "{}"))
        pipeline = PipelineConfig.from_dict(
            dict(snapshot.get("pipeline", {}) or {}),
            base=self._app_config.pipeline_for(kind),
        )
        return kind, snapshot, pipeline

    def _controller(self, kind: str, snapshot: dict[str, Any], pipeline: PipelineConfig) -> RetryController:
        return RetryController(
            config=pipeline,
            runner=self._runner_factory(kind, snapshot),
            sleep=self._sleep,
            on_progress=self._on_progress,
        )

    def _spawn_pool(self, batch_row: Any, unit_ids: list[str]) -> bool:
        batch_id = str(batch_row["batch_id"])
        kind, snapshot, pipeline = self._batch_context(batch_row)
        pool = ConcurrencyPool(
            db_path=self._db_path,
            config=pipeline,
            controller_factory=lambda: self._controller(kind, snapshot, pipeline),
            finalizer=self._finalizer,
        )

        def _target(cancel: CancellationToken) -> PoolReport:
            return pool.run(batch_id=batch_id, unit_ids=unit_ids, cancel=cancel)

        _task, created = self._tasks.spawn(batch_id, _target)
        return created

    # --- Batches
    def create_batch(
        self,
        *,
        kind: str,
        inputs: list[dict[str, Any]],
        name: str | None = None,
        max_attempts: int | None = None,
        concurrency_ceiling: int | None = None,
        dry_run: bool = False,
        overrides: dict[str, Any] | None = None,
        store: SQLiteStore | None = None,
        commit: bool = True,
    ) -> dict[str, Any]:
        """Create a batch and its pending units together."""
        if kind not in BATCH_KINDS:
            raise InvalidArgumentError(f"kind must be one of {sorted(BATCH_KINDS)}, got {kind!r}")
        limit = int(self._app_config.limits.max_units_per_batch)
        if not inputs or len(inputs) > limit:
            raise InvalidArgumentError(f"A batch needs between 1 and {limit} inputs, got {len(inputs)}.")

        cleaned: list[dict[str, Any]] = []
        for i, raw in enumerate(inputs):
            item = dict(raw or {})
            profile_ref = str(item.get("profile_ref") or "").strip()
            if not profile_ref:
                raise InvalidArgumentError(f"inputs[{i}].profile_ref is required.")
            item["profile_ref"] = profile_ref
            cleaned.append(item)

        pipeline = self._app_config.pipeline_for(kind)
        if max_attempts is not None:
            if int(max_attempts) < 1:
                raise InvalidArgumentError(f"max_attempts must be >= 1, got {max_attempts}.")
            pipeline = PipelineConfig.from_dict({"max_attempts": int(max_attempts)}, base=pipeline)
        if concurrency_ceiling is not None:
            if int(concurrency_ceiling) < 1:
                raise InvalidArgumentError(f"concurrency_ceiling must be >= 1, got {concurrency_ceiling}.")
            pipeline = PipelineConfig.from_dict({"concurrency_ceiling": int(concurrency_ceiling)}, base=pipeline)

        config_snapshot: dict[str, Any] = {
            "config_path": self._app_config.source_path,
            "dry_run": bool(dry_run),
            "pipeline": pipeline.to_dict(),
            "overrides": dict(overrides or {}),
        }
        batch_name = (name or "").strip() or f"{kind.capitalize()} batch ({len(cleaned)} units)"

        def _create(s: SQLiteStore) -> dict[str, Any]:
            batch, units = s.create_batch_with_units(
                kind=kind,
                name=batch_name,
                inputs=cleaned,
                max_attempts=pipeline.max_attempts,
                config=config_snapshot,
                commit=commit,
            )
            return {
                "batch": {
                    "batch_id": batch.batch_id,
                    "kind": batch.kind,
                    "name": batch.name,
                    "status": batch.status,
                    "created_at": batch.created_at,
                    "started_at": None,
                    "ended_at": None,
                    "config_snapshot": config_snapshot,
                    "error": None,
                },
                "units": [
                    {
                        "unit_id": u.unit_id,
                        "batch_id": u.batch_id,
                        "unit_index": u.unit_index,
                        "status": u.status,
                        "attempt_count": u.attempt_count,
                        "max_attempts": u.max_attempts,
                        "input": cleaned[u.unit_index - 1],
                        "created_at": u.created_at,
                    }
                    for u in units
                ],
            }

        if store is not None:
            return _create(store)
        with self._open_store() as s:
            return _create(s)

    def get_batch(self, batch_id: str) -> dict[str, Any]:
        with self._open_store() as store:
            row = store.get_batch(batch_id=batch_id)
            if row is None:
                raise NotFoundError("Batch not found.")
            item = batch_to_item(row)
            item["unit_counts"] = store.count_units_by_status(batch_id=batch_id)
            item["task_running"] = self._tasks.is_running(batch_id)
            return item

    def list_batches(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None = None,
        statuses: list[str] | None = None,
        kind: str | None = None,
    ) -> dict[str, Any]:
        with self._open_store() as store:
            return store.list_batches_page(limit=limit, cursor=cursor, statuses=statuses, kind=kind)

    def list_units(self, batch_id: str, *, statuses: list[str] | None = None) -> list[dict[str, Any]]:
        with self._open_store() as store:
            if store.get_batch(batch_id=batch_id) is None:
                raise NotFoundError("Batch not found.")
            return [unit_to_item(r) for r in store.find_units(batch_id=batch_id, statuses=statuses or None)]

    def start_batch(self, batch_id: str) -> StartResult:
        with self._open_store() as store:
            row = store.get_batch(batch_id=batch_id)
            if row is None:
                raise NotFoundError("Batch not found.")
            status = str(row["status"])
            if status == "cancelled":
                return StartResult(batch_id=batch_id, status=status, started=False)
            if self._tasks.is_running(batch_id):
                return StartResult(batch_id=batch_id, status=status, started=False)

            pending = store.list_unit_ids(batch_id=batch_id, statuses={"pending"})
            if status in {"complete", "failed"} and not pending:
                return StartResult(batch_id=batch_id, status=status, started=False)

            if not store.update_batch_status(
                batch_id, "processing", from_statuses={"pending", "processing", "complete", "failed"}, reset_ended_at=True
            ):
                # Cancelled between the read and the write.
                current = store.get_batch(batch_id=batch_id)
                return StartResult(batch_id=batch_id, status=str(current["status"]) if current else status, started=False)
            row = store.get_batch(batch_id=batch_id)

        started = self._spawn_pool(row, pending)
        return StartResult(batch_id=batch_id, status="processing", started=started, unit_ids=pending)

    def cancel_batch(self, batch_id: str, *, reason: str | None = None) -> CancelResult:
        with self._open_store() as store:
            result = self._propagator.cancel_batch(store, batch_id=batch_id, reason=reason)
        if result is None:
            raise NotFoundError("Batch not found.")
        if result.status == "cancelled":
            # Wake sleeping workers in this process; the store already carries the signal.
            self._tasks.cancel(batch_id)
        return result

    def retry_failed(self, batch_id: str, *, reset_attempts: bool = False) -> StartResult:
        """Reset failed/cancelled units to pending and run them again.

        Complete units are never touched. `attempt_count` is preserved unless
        `reset_attempts` is set.
        """
        if self._tasks.is_running(batch_id):
            raise ConflictError("Batch is still processing; wait for it to settle or cancel it first.")
        with self._open_store() as store:
            row = store.get_batch(batch_id=batch_id)
            if row is None:
                raise NotFoundError("Batch not found.")
            if store.count_units(batch_id=batch_id, statuses={"running"}) > 0:
                raise ConflictError("Batch still has running units.")
            retryable = store.list_unit_ids(batch_id=batch_id, statuses={"failed", "cancelled"})
            if not retryable:
                raise ConflictError("No failed or cancelled units to retry.")

            store.reset_units(
                unit_ids=retryable,
                from_statuses={"failed", "cancelled"},
                reset_attempts=reset_attempts,
                reason="retry_failed",
            )
            # Explicit external reset: the only path that re-opens a cancelled batch.
            store.update_batch_status(
                batch_id,
                "processing",
                from_statuses={"pending", "processing", "complete", "failed", "cancelled"},
                reset_ended_at=True,
            )
            pending = store.list_unit_ids(batch_id=batch_id, statuses={"pending"})
            row = store.get_batch(batch_id=batch_id)

        started = self._spawn_pool(row, pending)
        return StartResult(batch_id=batch_id, status="processing", started=started, unit_ids=pending)

    def finalize_batch(self, batch_id: str) -> str | None:
        with self._open_store() as store:
            if store.get_batch(batch_id=batch_id) is None:
                raise NotFoundError("Batch not found.")
            return self._finalizer.finalize(store, batch_id=batch_id)

    def wait(self, batch_id: str, *, timeout_s: float | None = None) -> bool:
        return self._tasks.wait(batch_id, timeout_s=timeout_s)

    # --- Units
    def get_unit(self, unit_id: str) -> dict[str, Any]:
        with self._open_store() as store:
            row = store.get_unit(unit_id=unit_id)
            if row is None:
                raise NotFoundError("Unit not found.")
            return unit_to_item(row)

    def run_unit(self, unit_id: str) -> UnitOutcome:
        """Drive a single pending unit synchronously, then finalize its batch."""
        with self._open_store() as store:
            unit = store.get_unit(unit_id=unit_id)
            if unit is None:
                raise NotFoundError("Unit not found.")
            batch = store.get_batch(batch_id=str(unit["batch_id"]))
            if batch is None:
                raise NotFoundError("Batch not found.")
            if str(batch["status"]) == "cancelled" and str(unit["status"]) == "pending":
                raise ConflictError("Batch is cancelled; use retry-failed to re-open it.")

            if str(unit["status"]) == "pending":
                store.update_batch_status(
                    str(batch["batch_id"]),
                    "processing",
                    from_statuses={"pending", "complete", "failed"},
                    reset_ended_at=True,
                )
            kind, snapshot, pipeline = self._batch_context(batch)
            outcome = self._controller(kind, snapshot, pipeline).run(store, unit_id=unit_id)
            if outcome.dispatched:
                self._finalizer.finalize(store, batch_id=str(batch["batch_id"]))
            return outcome

    def retry_unit(self, unit_id: str, *, reset_attempts: bool = False) -> UnitOutcome:
        with self._open_store() as store:
            unit = store.get_unit(unit_id=unit_id)
            if unit is None:
                raise NotFoundError("Unit not found.")
            batch = store.get_batch(batch_id=str(unit["batch_id"]))
            if batch is not None and str(batch["status"]) == "cancelled":
                raise ConflictError("Batch is cancelled; use retry-failed to re-open it.")
            if str(unit["status"]) not in {"failed", "cancelled"}:
                raise ConflictError(f"Only failed or cancelled units can be retried (status={unit['status']}).")
            store.reset_units(
                unit_ids=[unit_id],
                from_statuses={"failed", "cancelled"},
                reset_attempts=reset_attempts,
                reason="retry_unit",
            )
        return self.run_unit(unit_id)

    def cancel_unit(self, unit_id: str, *, reason: str | None = None) -> CancelResult:
        with self._open_store() as store:
            result = self._propagator.cancel_unit(store, unit_id=unit_id, reason=reason)
            if result is None:
                raise NotFoundError("Unit not found.")
            unit = store.get_unit(unit_id=unit_id)
            if result.cancelled_unit_ids and unit is not None:
                self._finalizer.finalize(store, batch_id=str(unit["batch_id"]))
            return result

    def list_events(
        self, unit_id: str, *, limit: int, cursor: tuple[float, str] | None, event_types: list[str] | None
    ) -> dict[str, Any]:
        with self._open_store() as store:
            if store.get_unit(unit_id=unit_id) is None:
                raise NotFoundError("Unit not found.")
            return store.list_events_page(unit_id=unit_id, limit=limit, cursor=cursor, event_types=event_types)

    # --- Orphan detection / manual recovery
    def find_stale_units(self, *, older_than_s: float | None = None) -> list[dict[str, Any]]:
        threshold = float(older_than_s if older_than_s is not None else self._app_config.recovery.stale_after_s)
        with self._open_store() as store:
            items = []
            for row in store.find_stale_running_units(older_than_s=threshold):
                item = unit_to_item(row)
                item["task_running"] = self._tasks.is_running(str(row["batch_id"]))
                items.append(item)
            return items

    def reset_unit(self, unit_id: str, *, reset_attempts: bool = False) -> dict[str, Any]:
        """Manually put a stuck (orphaned), failed or cancelled unit back to pending.

        In a cancelled batch failed/cancelled units are refused (`retry_failed`
        re-opens the batch) and an orphaned running unit is settled as cancelled.
        """
        with self._open_store() as store:
            unit = store.get_unit(unit_id=unit_id)
            if unit is None:
                raise NotFoundError("Unit not found.")
            status = str(unit["status"])
            if status == "running" and self._tasks.is_running(str(unit["batch_id"])):
                raise ConflictError("Unit is being driven by a live task in this process.")
            if status not in {"running", "failed", "cancelled"}:
                raise ConflictError(f"Unit cannot be reset from status={status}.")
            batch = store.get_batch(batch_id=str(unit["batch_id"]))
            if batch is not None and str(batch["status"]) == "cancelled":
                if status != "running":
                    raise ConflictError("Batch is cancelled; use retry-failed to reopen it.")
                # The batch will never dispatch this unit again: settle the orphan instead.
                store.settle_orphan_as_cancelled(unit_id, reason="batch_cancelled")
                return unit_to_item(store.get_unit(unit_id=unit_id))
            # Re-opens a complete/failed batch in the same transaction.
            store.reset_units(
                unit_ids=[unit_id],
                from_statuses={status},
                reset_attempts=reset_attempts,
                reason="manual_reset" if status != "running" else "orphan_recovered",
            )
            row = store.get_unit(unit_id=unit_id)
            return unit_to_item(row)

    def reconcile_orphaned_units(self) -> list[str]:
        """Recover `running` units whose batch has no live task in this process.

        Returns the ids reset to `pending`; orphans of cancelled batches are
        settled as `cancelled` instead.
        """
        with self._open_store() as store:
            live = [b for b in store.list_batch_ids(statuses={"processing", "cancelled"}) if self._tasks.is_running(b)]
            return store.reconcile_running_units(exclude_batch_ids=live)

    def resume_processing_batches(self) -> list[str]:
        """Re-dispatch pending units of batches left `processing` by a previous process."""
        with self._open_store() as store:
            batch_ids = store.list_batch_ids(statuses={"processing"})
        resumed: list[str] = []
        for batch_id in batch_ids:
            result = self.start_batch(batch_id)
            if result.started:
                resumed.append(batch_id)
        return resumed

    # --- Lifecycle / observability
    def status_snapshot(self) -> dict[str, Any]:
        with self._open_store() as store:
            return {
                "db_path": self._db_path,
                "tasks": self._tasks.status_snapshot(),
                "batches_by_status": store.count_batches_by_status(),
                "units_by_status": store.count_units_by_status(),
            }

    def shutdown(self, *, timeout_s: float = 5.0) -> None:
        self._tasks.stop(timeout_s=timeout_s)
