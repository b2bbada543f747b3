from __future__ import annotations

from dataclasses import dataclass, field

from outreach_pipeline.storage.sqlite_store import SQLiteStore


@dataclass(frozen=True)
class CancelResult:
    target_id: str
    status: str
    cancel_id: str | None = None
    cancelled_unit_ids: list[str] = field(default_factory=list)
    running_unit_ids: list[str] = field(default_factory=list)


class CancellationPropagator:
    """Cancel a batch (or one unit) through the store.

    Pending units are cancelled immediately so they are never dispatched.
    Running units are left alone; their attempt loop observes the cancellation
    at its next checkpoint, so termination is eventual rather than immediate.
    """

    def cancel_batch(self, store: SQLiteStore, *, batch_id: str, reason: str | None = None) -> CancelResult | None:
        batch = store.get_batch(batch_id=batch_id)
        if batch is None:
            return None

        if str(batch["status"]) in {"complete", "failed"}:
            # Nothing left to stop; a terminal batch keeps its outcome.
            return CancelResult(target_id=batch_id, status=str(batch["status"]))

        cancel_id = store.request_cancel(target_type="batch", target_id=batch_id, reason=reason or None)
        store.update_batch_status(batch_id, "cancelled", from_statuses={"pending", "processing"})
        cancelled = store.cancel_pending_units(batch_id=batch_id, reason=reason or "batch_cancelled")
        running = store.list_unit_ids(batch_id=batch_id, statuses={"running"})
        store.acknowledge_cancel(target_type="batch", target_id=batch_id)

        return CancelResult(
            target_id=batch_id,
            status="cancelled",
            cancel_id=cancel_id,
            cancelled_unit_ids=cancelled,
            running_unit_ids=running,
        )

    def cancel_unit(self, store: SQLiteStore, *, unit_id: str, reason: str | None = None) -> CancelResult | None:
        unit = store.get_unit(unit_id=unit_id)
        if unit is None:
            return None

        status = str(unit["status"])
        if status == "pending":
            if store.transition_unit(unit_id, to_status="cancelled", from_statuses={"pending"}):
                store.append_event(unit_id, "unit_cancelled", {"reason": reason or "cancel_requested", "while": "pending"})
                return CancelResult(target_id=unit_id, status="cancelled", cancelled_unit_ids=[unit_id])
            status = str((store.get_unit(unit_id=unit_id) or unit)["status"])

        if status == "running":
            # Observed by the attempt loop at its next checkpoint.
            cancel_id = store.request_cancel(target_type="unit", target_id=unit_id, reason=reason or None)
            store.append_event(unit_id, "cancel_requested", {"reason": reason or "cancel_requested"})
            return CancelResult(target_id=unit_id, status="running", cancel_id=cancel_id, running_unit_ids=[unit_id])

        return CancelResult(target_id=unit_id, status=status)
