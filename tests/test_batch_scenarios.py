from __future__ import annotations

import threading
import time

from conftest import ScriptedRunner

from outreach_pipeline.config.load_config import AppConfig
from outreach_pipeline.runtime.service import PipelineService


def _service(db_path: str, app_config: AppConfig, runner: ScriptedRunner) -> PipelineService:
    return PipelineService(db_path=db_path, app_config=app_config, runner_factory=lambda _kind, _snapshot: runner)


def _wait_for(predicate, timeout_s: float = 5.0) -> None:  # noqa: ANN001
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def test_scenario_a_mixed_outcomes_with_pending_cancel(db_path: str, app_config: AppConfig) -> None:
    hold = threading.Event()
    runner = ScriptedRunner(script={"p4": ["fail", "fail", "ok"]}, hold=hold)
    service = _service(db_path, app_config, runner)

    created = service.create_batch(
        kind="enrichment",
        inputs=[{"profile_ref": f"p{i + 1}"} for i in range(5)],
        max_attempts=5,
        concurrency_ceiling=2,
    )
    batch_id = created["batch"]["batch_id"]
    unit_ids = [u["unit_id"] for u in created["units"]]

    start = service.start_batch(batch_id)
    assert start.started is True

    # Two workers are parked inside units 1 and 2; unit 5 is still pending.
    _wait_for(lambda: runner.active == 2)
    assert runner.max_active == 2
    result = service.cancel_unit(unit_ids[4])
    assert result.status == "cancelled"
    hold.set()

    assert service.wait(batch_id, timeout_s=10.0)
    units = service.list_units(batch_id)
    assert [u["status"] for u in units] == ["complete", "complete", "complete", "complete", "cancelled"]
    assert units[3]["attempt_count"] == 3
    assert units[4]["attempt_count"] == 0
    assert runner.max_active <= 2
    assert service.get_batch(batch_id)["status"] == "cancelled"


def test_scenario_b_all_units_exhaust_retries(db_path: str, app_config: AppConfig) -> None:
    runner = ScriptedRunner(script={f"p{i}": ["fail"] * 3 for i in range(3)})
    service = _service(db_path, app_config, runner)

    created = service.create_batch(
        kind="discovery",
        inputs=[{"profile_ref": f"p{i}"} for i in range(3)],
        max_attempts=3,
    )
    batch_id = created["batch"]["batch_id"]
    service.start_batch(batch_id)
    assert service.wait(batch_id, timeout_s=10.0)

    batch = service.get_batch(batch_id)
    assert batch["status"] == "failed"
    assert batch["unit_counts"] == {"failed": 3}
    for unit in service.list_units(batch_id):
        assert unit["attempt_count"] == 3
        assert unit["last_error"].startswith("Failed after 3 attempts: ")


def test_scenario_c_retry_failed_touches_only_failed_and_cancelled(db_path: str, app_config: AppConfig) -> None:
    runner = ScriptedRunner(script={"p1": ["fail", "fail", "ok"]})
    service = _service(db_path, app_config, runner)

    created = service.create_batch(
        kind="enrichment",
        inputs=[{"profile_ref": f"p{i}"} for i in range(3)],
        max_attempts=2,
    )
    batch_id = created["batch"]["batch_id"]
    unit_ids = [u["unit_id"] for u in created["units"]]
    service.cancel_unit(unit_ids[2])
    service.start_batch(batch_id)
    assert service.wait(batch_id, timeout_s=10.0)

    assert [u["status"] for u in service.list_units(batch_id)] == ["complete", "failed", "cancelled"]
    assert service.get_batch(batch_id)["status"] == "failed"
    first = service.get_unit(unit_ids[0])

    # attempt_count preserved: the failed unit has no budget left and fails again without a new call.
    retry = service.retry_failed(batch_id)
    assert sorted(retry.unit_ids) == sorted([unit_ids[1], unit_ids[2]])
    assert service.wait(batch_id, timeout_s=10.0)
    units = service.list_units(batch_id)
    assert [u["status"] for u in units] == ["complete", "failed", "complete"]
    assert units[1]["attempt_count"] == 2
    assert units[0]["ended_at"] == first["ended_at"]
    assert units[0]["result"] == first["result"]

    # Explicitly zeroed attempts: full budget again.
    service.retry_failed(batch_id, reset_attempts=True)
    assert service.wait(batch_id, timeout_s=10.0)
    units = service.list_units(batch_id)
    assert [u["status"] for u in units] == ["complete", "complete", "complete"]
    assert service.get_batch(batch_id)["status"] == "complete"
    # The complete unit was never re-run.
    assert [a for ref, a in runner.calls if ref == "p0"] == [1]
