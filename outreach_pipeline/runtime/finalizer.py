from __future__ import annotations

from outreach_pipeline.storage.sqlite_store import ACTIVE_UNIT_STATUSES, SQLiteStore


def aggregate_batch_status(*, batch_status: str, unit_counts: dict[str, int]) -> str | None:
    """Aggregate unit statuses into a terminal batch status.

    Returns None while any unit is still pending/running. Precedence:
    explicit batch cancellation, then failure, then unit-level cancellation,
    then complete.
    """
    if not unit_counts:
        return None
    if any(unit_counts.get(s, 0) > 0 for s in ACTIVE_UNIT_STATUSES):
        return None
    if batch_status == "cancelled":
        return "cancelled"
    if unit_counts.get("failed", 0) > 0:
        return "failed"
    if unit_counts.get("cancelled", 0) > 0:
        return "cancelled"
    return "complete"


class BatchFinalizer:
    """Compute and persist a batch's terminal status once every unit is terminal.

    Idempotent and safe to race: statuses are re-read inside one `BEGIN IMMEDIATE`
    transaction, so whichever worker finishes last sees a consistent snapshot.
    """

    def finalize(self, store: SQLiteStore, *, batch_id: str) -> str | None:
        with store.transaction(mode="IMMEDIATE"):
            batch = store.get_batch(batch_id=batch_id)
            if batch is None:
                return None
            current = str(batch["status"])
            final = aggregate_batch_status(
                batch_status=current,
                unit_counts=store.count_units_by_status(batch_id=batch_id),
            )
            if final is None:
                return None
            if current == "cancelled":
                # Sticky: never overwritten by automatic logic.
                return current
            if current != final:
                store.update_batch_status(
                    batch_id,
                    final,
                    from_statuses={"pending", "processing", "complete", "failed"},
                    commit=False,
                )
            return final
