from __future__ import annotations

import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable

from outreach_pipeline.runtime.pool import PoolReport
from outreach_pipeline.utils.cancel import CancellationToken


@dataclass
class BatchTask:
    """A spawned, independently cancellable run of one batch.

    The task reports progress only through the store: the caller may not be
    around (or even alive) when it finishes.
    """

    batch_id: str
    cancel: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    report: PoolReport | None = None
    error: str | None = None
    thread: threading.Thread | None = None
    done: threading.Event = field(default_factory=threading.Event)

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self.done.is_set()

    def wait(self, timeout_s: float | None = None) -> bool:
        return self.done.wait(timeout=timeout_s)

    def snapshot(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "running": self.running,
            "cancel_requested": self.cancel.cancelled,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "workers": self.report.workers if self.report is not None else None,
            "batch_status": self.report.batch_status if self.report is not None else None,
            "error": self.error,
        }


class BatchTaskRunner:
    """Background thread host: at most one live task per batch in this process."""

    def __init__(self) -> None:
        self._tasks: dict[str, BatchTask] = {}
        self._lock = threading.Lock()

    def spawn(self, batch_id: str, target: Callable[[CancellationToken], PoolReport]) -> tuple[BatchTask, bool]:
        """Start `target` on a new thread unless a task for `batch_id` is still alive.

        Returns `(task, created)`.
        """
        with self._lock:
            existing = self._tasks.get(batch_id)
            if existing is not None and existing.running:
                return existing, False

            task = BatchTask(batch_id=batch_id)
            task.thread = threading.Thread(
                target=self._run,
                args=(task, target),
                name=f"outreach-batch-{batch_id[-8:]}",
                daemon=True,
            )
            self._tasks[batch_id] = task
            task.thread.start()
            return task, True

    @staticmethod
    def _run(task: BatchTask, target: Callable[[CancellationToken], PoolReport]) -> None:
        try:
            task.report = target(task.cancel)
        except Exception as e:
            # The thread must not die silently; keep the failure on the task for /system/worker.
            task.error = f"batch_task_unhandled_exception: {e}\n{traceback.format_exc()}"
        finally:
            task.ended_at = time.time()
            task.done.set()

    def get(self, batch_id: str) -> BatchTask | None:
        with self._lock:
            return self._tasks.get(batch_id)

    def is_running(self, batch_id: str) -> bool:
        task = self.get(batch_id)
        return task is not None and task.running

    def cancel(self, batch_id: str) -> bool:
        task = self.get(batch_id)
        if task is None or not task.running:
            return False
        task.cancel.request_cancel()
        return True

    def wait(self, batch_id: str, *, timeout_s: float | None = None) -> bool:
        task = self.get(batch_id)
        if task is None:
            return True
        return task.wait(timeout_s)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """Wait briefly for live tasks; daemon threads left behind die with the process."""
        deadline = time.time() + float(timeout_s)
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            remaining = max(0.0, deadline - time.time())
            task.wait(remaining)

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            tasks = list(self._tasks.values())
        return {
            "live_tasks": sum(1 for t in tasks if t.running),
            "tasks": [t.snapshot() for t in tasks],
        }
