from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from outreach_pipeline.storage.sqlite_store import SQLiteStore
from outreach_pipeline.utils.cancel import CancelledError, CancellationToken


class AgentError(RuntimeError):
    """Raised by an agent runner when an attempt fails; the retry controller may try again."""


class AgentRunner(Protocol):
    """External long-running operation that performs the work of one unit.

    Implementations must be safe to invoke repeatedly for the same unit. They
    report progress through `ctx.progress(...)`, which doubles as a cancellation
    checkpoint, and may persist partial progress with `ctx.save_state(...)` so a
    later attempt can skip completed sub-steps.
    """

    kind: str

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]: ...


def cancellation_reason(
    store: SQLiteStore, *, batch_id: str, unit_id: str, cancel: CancellationToken
) -> str | None:
    """Return why this unit should stop, or None.

    Checks the in-memory token first, then the persisted batch/unit status and any
    pending unit-level cancel request (acknowledged on observation).
    """
    if cancel.cancelled:
        return "cancel_requested"
    batch = store.get_batch(batch_id=batch_id)
    if batch is not None and str(batch["status"]) == "cancelled":
        return "batch_cancelled"
    unit = store.get_unit(unit_id=unit_id)
    if unit is not None and str(unit["status"]) == "cancelled":
        return "unit_cancelled"
    if store.is_cancel_requested(target_type="unit", target_id=unit_id):
        store.acknowledge_cancel(target_type="unit", target_id=unit_id)
        return "unit_cancel_requested"
    return None


@dataclass
class UnitContext:
    store: SQLiteStore
    cancel: CancellationToken
    batch_id: str
    unit_id: str
    attempt: int
    max_attempts: int
    state: dict[str, Any] = field(default_factory=dict)
    on_progress: Callable[[str, dict[str, Any]], None] | None = None

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        self.store.append_event(self.unit_id, event_type, payload)

    def check_cancelled(self) -> None:
        reason = cancellation_reason(self.store, batch_id=self.batch_id, unit_id=self.unit_id, cancel=self.cancel)
        if reason is not None:
            raise CancelledError(reason)

    def progress(self, event_type: str, payload: dict[str, Any] | None = None, *, step: str | None = None) -> None:
        """Checkpoint: observe cancellation, then record a human-readable progress event."""
        self.check_cancelled()
        data = dict(payload or {})
        self.trace(event_type, {"attempt": self.attempt, **data})
        if step is not None:
            self.store.update_unit(self.unit_id, current_step=step)
        else:
            self.store.touch_unit(self.unit_id)
        if self.on_progress is not None:
            self.on_progress(event_type, data)

    def save_state(self, key: str, value: Any) -> None:
        """Persist one completed sub-step so a retry can reuse it."""
        self.state = self.store.save_unit_state(self.unit_id, key, value)
        self.trace("state_saved", {"attempt": self.attempt, "key": key})

    def has_state(self, key: str) -> bool:
        return key in self.state
