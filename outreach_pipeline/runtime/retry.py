from __future__ import annotations

import json
import traceback
from dataclasses import dataclass
from typing import Any, Callable

from outreach_pipeline.agents.types import AgentRunner, UnitContext, cancellation_reason
from outreach_pipeline.config.load_config import PipelineConfig
from outreach_pipeline.storage.sqlite_store import SQLiteStore
from outreach_pipeline.utils.cancel import CancelledError, CancellationToken


ProgressListener = Callable[[str, str, dict[str, Any]], None]


@dataclass(frozen=True)
class UnitOutcome:
    unit_id: str
    status: str
    attempt_count: int
    dispatched: bool = True
    error: str | None = None


def _load_json_object(raw: Any) -> dict[str, Any]:
    try:
        value = json.loads(str(raw or "{}"))
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class RetryController:
    """Drive one unit through bounded attempts with exponential backoff.

    Attempts within a unit are strictly sequential. Every status write is a
    conditional transition, so a unit cancelled or reset by someone else is
    never overwritten by a late attempt.
    """

    def __init__(
        self,
        *,
        config: PipelineConfig,
        runner: AgentRunner,
        sleep: Callable[[float], None] | None = None,
        on_progress: ProgressListener | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._sleep = sleep
        self._on_progress = on_progress

    def run(self, store: SQLiteStore, *, unit_id: str, cancel: CancellationToken | None = None) -> UnitOutcome:
        cancel = cancel or CancellationToken()

        unit = store.get_unit(unit_id=unit_id)
        if unit is None:
            return UnitOutcome(unit_id=unit_id, status="missing", attempt_count=0, dispatched=False)

        # Status gating: only a pending unit enters the attempt loop.
        if str(unit["status"]) != "pending":
            return UnitOutcome(
                unit_id=unit_id,
                status=str(unit["status"]),
                attempt_count=int(unit["attempt_count"]),
                dispatched=False,
            )

        batch_id = str(unit["batch_id"])
        max_attempts = int(unit["max_attempts"])
        attempt = int(unit["attempt_count"])
        unit_input = _load_json_object(unit["input_json"])

        if attempt >= max_attempts:
            # Reset to pending without a fresh budget: nothing left to try.
            message = f"Failed after {max_attempts} attempts"
            if store.transition_unit(unit_id, to_status="failed", from_statuses={"pending"}, last_error=message):
                store.append_event(unit_id, "unit_failed", {"error": message, "attempt": attempt, "budget_exhausted": True})
            return self._current(store, unit_id, error=message)

        from_statuses = {"pending"}
        last_error = ""
        while True:
            reason = cancellation_reason(store, batch_id=batch_id, unit_id=unit_id, cancel=cancel)
            if reason is not None:
                return self._cancel(store, unit_id=unit_id, from_statuses=from_statuses | {"pending"}, reason=reason)

            step = "Starting" if attempt == 0 else f"Retrying (attempt {attempt + 1}/{max_attempts})"
            claimed = store.begin_attempt(unit_id, from_statuses=from_statuses, step=step)
            if claimed is None:
                # Lost the claim: cancelled, reset or already driven by another caller.
                return self._current(store, unit_id, dispatched=from_statuses != {"pending"})
            attempt = int(claimed["attempt_count"])
            from_statuses = {"running"}
            store.append_event(unit_id, "attempt_started", {"attempt": attempt, "max_attempts": max_attempts})

            ctx = UnitContext(
                store=store,
                cancel=cancel,
                batch_id=batch_id,
                unit_id=unit_id,
                attempt=attempt,
                max_attempts=max_attempts,
                state=_load_json_object(claimed["resumable_state_json"]),
                on_progress=self._bind_listener(unit_id),
            )

            try:
                result = self._runner.run(unit_input, ctx)
            except CancelledError as e:
                return self._cancel(store, unit_id=unit_id, from_statuses={"running"}, reason=str(e) or "cancel_requested")
            except Exception as e:
                last_error = str(e) or type(e).__name__
                store.append_event(
                    unit_id,
                    "attempt_failed",
                    {"attempt": attempt, "error": last_error, "traceback": traceback.format_exc()},
                )
            else:
                if result:
                    if store.transition_unit(unit_id, to_status="complete", from_statuses={"running"}, result=result):
                        store.append_event(unit_id, "unit_completed", {"attempt": attempt})
                    return self._current(store, unit_id)
                last_error = "Agent returned no data"
                store.append_event(unit_id, "attempt_failed", {"attempt": attempt, "error": last_error})

            if attempt < max_attempts:
                delay_s = self._config.backoff_delay_s(attempt)
                if not store.record_unit_error(
                    unit_id,
                    error=last_error,
                    step=f"Retrying in {delay_s:g}s (attempt {attempt}/{max_attempts} failed)",
                ):
                    return self._current(store, unit_id, error=last_error)
                store.append_event(
                    unit_id,
                    "retry_scheduled",
                    {"attempt": attempt, "delay_s": delay_s, "error": last_error},
                )
                self._backoff(delay_s, cancel)
                continue

            message = f"Failed after {max_attempts} attempts: {last_error}"
            if store.transition_unit(unit_id, to_status="failed", from_statuses={"running"}, last_error=message):
                store.append_event(unit_id, "unit_failed", {"attempt": attempt, "error": message})
            return self._current(store, unit_id, error=message)

    def _backoff(self, delay_s: float, cancel: CancellationToken) -> None:
        if self._sleep is not None:
            self._sleep(delay_s)
            return
        # Wakes early on an in-process cancel; the loop boundary then observes it.
        cancel.wait(delay_s)

    def _bind_listener(self, unit_id: str) -> Callable[[str, dict[str, Any]], None] | None:
        listener = self._on_progress
        if listener is None:
            return None

        def _emit(event_type: str, payload: dict[str, Any]) -> None:
            listener(unit_id, event_type, payload)

        return _emit

    def _cancel(self, store: SQLiteStore, *, unit_id: str, from_statuses: set[str], reason: str) -> UnitOutcome:
        if store.transition_unit(unit_id, to_status="cancelled", from_statuses=from_statuses):
            store.append_event(unit_id, "unit_cancelled", {"reason": reason})
        return self._current(store, unit_id)

    @staticmethod
    def _current(
        store: SQLiteStore, unit_id: str, *, dispatched: bool = True, error: str | None = None
    ) -> UnitOutcome:
        row = store.get_unit(unit_id=unit_id)
        if row is None:
            return UnitOutcome(unit_id=unit_id, status="missing", attempt_count=0, dispatched=dispatched, error=error)
        return UnitOutcome(
            unit_id=unit_id,
            status=str(row["status"]),
            attempt_count=int(row["attempt_count"]),
            dispatched=dispatched,
            error=row["last_error"] if error is None else error,
        )
