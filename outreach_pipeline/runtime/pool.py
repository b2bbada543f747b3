from __future__ import annotations

import threading
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from outreach_pipeline.config.load_config import PipelineConfig
from outreach_pipeline.runtime.finalizer import BatchFinalizer
from outreach_pipeline.runtime.retry import RetryController, UnitOutcome
from outreach_pipeline.storage.sqlite_store import SQLiteStore
from outreach_pipeline.utils.cancel import CancellationToken


@dataclass
class PoolReport:
    batch_id: str
    workers: int
    outcomes: dict[str, UnitOutcome] = field(default_factory=dict)
    crashed: dict[str, str] = field(default_factory=dict)
    batch_status: str | None = None

    def statuses(self) -> dict[str, str]:
        return {unit_id: o.status for unit_id, o in self.outcomes.items()}


class _UnitCursor:
    """Shared claim cursor over a fixed list of unit ids (no work stealing)."""

    def __init__(self, unit_ids: list[str]) -> None:
        self._unit_ids = list(unit_ids)
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> str | None:
        with self._lock:
            if self._next >= len(self._unit_ids):
                return None
            unit_id = self._unit_ids[self._next]
            self._next += 1
            return unit_id

    def drain(self) -> list[str]:
        with self._lock:
            rest = self._unit_ids[self._next :]
            self._next = len(self._unit_ids)
            return rest


class ConcurrencyPool:
    """Run a batch's pending units on `min(C, N)` worker threads, then finalize once.

    Workers are independent (all-settled): an exception inside one unit is
    recorded and the worker moves on. Each worker thread opens its own store
    connection; SQLite is the only shared state.
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        config: PipelineConfig,
        controller_factory: Callable[[], RetryController],
        finalizer: BatchFinalizer | None = None,
    ) -> None:
        self._db_path = str(db_path)
        self._config = config
        self._controller_factory = controller_factory
        self._finalizer = finalizer or BatchFinalizer()

    def run(self, *, batch_id: str, unit_ids: list[str], cancel: CancellationToken | None = None) -> PoolReport:
        cancel = cancel or CancellationToken()
        n_workers = min(int(self._config.concurrency_ceiling), len(unit_ids))
        report = PoolReport(batch_id=batch_id, workers=n_workers)
        cursor = _UnitCursor(unit_ids)
        report_lock = threading.Lock()

        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(batch_id, cursor, cancel, report, report_lock),
                name=f"outreach-pool-{batch_id[-8:]}-{i + 1}",
                daemon=True,
            )
            for i in range(n_workers)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        store = SQLiteStore(self._db_path)
        try:
            report.batch_status = self._finalizer.finalize(store, batch_id=batch_id)
        finally:
            store.close()
        return report

    def _worker_loop(
        self,
        batch_id: str,
        cursor: _UnitCursor,
        cancel: CancellationToken,
        report: PoolReport,
        report_lock: threading.Lock,
    ) -> None:
        store = SQLiteStore(self._db_path)
        controller = self._controller_factory()
        try:
            while True:
                unit_id = cursor.claim()
                if unit_id is None:
                    return

                if self._batch_cancelled(store, batch_id=batch_id, cancel=cancel):
                    # Stop dispatching; everything not yet started is cancelled without running.
                    store.cancel_pending_units(batch_id=batch_id, reason="batch_cancelled")
                    skipped = [unit_id, *cursor.drain()]
                    with report_lock:
                        for sid in skipped:
                            row = store.get_unit(unit_id=sid)
                            report.outcomes[sid] = UnitOutcome(
                                unit_id=sid,
                                status=str(row["status"]) if row is not None else "missing",
                                attempt_count=int(row["attempt_count"]) if row is not None else 0,
                                dispatched=False,
                            )
                    return

                try:
                    outcome = controller.run(store, unit_id=unit_id, cancel=cancel)
                except Exception as e:
                    # Never let one unit take down its siblings; leave a trace for operators.
                    message = f"worker_unhandled_exception: {e}"
                    with report_lock:
                        report.crashed[unit_id] = message
                    store.append_event(unit_id, "unit_crashed", {"error": message, "traceback": traceback.format_exc()})
                    continue

                with report_lock:
                    report.outcomes[unit_id] = outcome
        finally:
            store.close()

    @staticmethod
    def _batch_cancelled(store: SQLiteStore, *, batch_id: str, cancel: CancellationToken) -> bool:
        if cancel.cancelled:
            return True
        batch = store.get_batch(batch_id=batch_id)
        return batch is not None and str(batch["status"]) == "cancelled"
