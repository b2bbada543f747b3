from __future__ import annotations

import json
import sqlite3

import pytest

from outreach_pipeline.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _seed(store: SQLiteStore, n: int = 2, *, max_attempts: int = 3) -> tuple[str, list[str]]:
    batch, units = store.create_batch_with_units(
        kind="discovery",
        name="seed",
        inputs=[{"profile_ref": f"p{i}"} for i in range(n)],
        max_attempts=max_attempts,
        config={"dry_run": True},
    )
    return batch.batch_id, [u.unit_id for u in units]


def test_migration_creates_tables_and_schema_version(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        for name in ("batches", "units", "unit_events", "cancel_requests", "idempotency_keys"):
            assert _table_exists(store._conn, name)
        assert store._get_schema_version() == SCHEMA_VERSION
    finally:
        store.close()


def test_create_batch_with_units_is_atomic_and_ordered(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        batch_id, unit_ids = _seed(store, 3)
        batch = store.get_batch(batch_id=batch_id)
        assert batch is not None and batch["status"] == "pending"
        rows = store.find_units(batch_id=batch_id)
        assert [r["unit_id"] for r in rows] == unit_ids
        assert [int(r["unit_index"]) for r in rows] == [1, 2, 3]
        assert all(r["status"] == "pending" and int(r["attempt_count"]) == 0 for r in rows)
        assert store.count_units(batch_id=batch_id, statuses={"pending"}) == 3

        with pytest.raises(ValueError):
            store.create_batch_with_units(kind="nope", name="x", inputs=[{"profile_ref": "a"}], max_attempts=1, config={})
    finally:
        store.close()


def test_transition_unit_is_conditional(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, _u2) = _seed(store)
        assert store.transition_unit(u1, to_status="cancelled", from_statuses={"pending"})
        # A cancelled unit is never resurrected by a late writer.
        assert not store.transition_unit(u1, to_status="complete", from_statuses={"running"}, result={"x": 1})
        row = store.get_unit(unit_id=u1)
        assert row is not None and row["status"] == "cancelled"
        assert row["result_json"] is None
    finally:
        store.close()


def test_begin_attempt_respects_budget(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, _u2) = _seed(store, max_attempts=2)
        first = store.begin_attempt(u1, from_statuses={"pending"}, step="Starting")
        assert first is not None
        assert int(first["attempt_count"]) == 1 and first["status"] == "running"
        second = store.begin_attempt(u1, from_statuses={"running"})
        assert second is not None and int(second["attempt_count"]) == 2
        # Budget exhausted: attempt_count never exceeds max_attempts.
        assert store.begin_attempt(u1, from_statuses={"running"}) is None
        row = store.get_unit(unit_id=u1)
        assert row is not None and int(row["attempt_count"]) == 2
    finally:
        store.close()


def test_save_unit_state_merges_keys(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, _u2) = _seed(store)
        store.save_unit_state(u1, "a", 1)
        state = store.save_unit_state(u1, "b", {"url": "x"})
        assert state == {"a": 1, "b": {"url": "x"}}
        row = store.get_unit(unit_id=u1)
        assert row is not None
        assert json.loads(row["resumable_state_json"]) == {"a": 1, "b": {"url": "x"}}
    finally:
        store.close()


def test_cancel_pending_units_leaves_running_untouched(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        batch_id, (u1, u2) = _seed(store)
        assert store.begin_attempt(u1, from_statuses={"pending"}) is not None
        cancelled = store.cancel_pending_units(batch_id=batch_id, reason="batch_cancelled")
        assert cancelled == [u2]
        assert store.get_unit(unit_id=u1)["status"] == "running"
        assert store.get_unit(unit_id=u2)["status"] == "cancelled"
        assert store.get_latest_event(unit_id=u2, event_type="unit_cancelled") is not None
    finally:
        store.close()


def test_reset_units_preserves_attempts_and_state_unless_asked(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, u2) = _seed(store)
        for unit_id in (u1, u2):
            store.begin_attempt(unit_id, from_statuses={"pending"})
            store.save_unit_state(unit_id, "background_image", {"url": "img"})
            store.transition_unit(unit_id, to_status="failed", from_statuses={"running"}, last_error="boom")

        assert store.reset_units(unit_ids=[u1], from_statuses={"failed"}) == [u1]
        assert store.reset_units(unit_ids=[u2], from_statuses={"failed"}, reset_attempts=True, clear_state=True) == [u2]

        r1 = store.get_unit(unit_id=u1)
        assert r1["status"] == "pending" and int(r1["attempt_count"]) == 1
        assert r1["last_error"] is None
        assert json.loads(r1["resumable_state_json"]) == {"background_image": {"url": "img"}}

        r2 = store.get_unit(unit_id=u2)
        assert int(r2["attempt_count"]) == 0
        assert json.loads(r2["resumable_state_json"]) == {}

        # complete is never a reset source.
        assert store.reset_units(unit_ids=[u1], from_statuses={"failed"}) == []
    finally:
        store.close()


def test_reset_units_acknowledges_stale_unit_cancel_requests(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, _u2) = _seed(store)
        store.begin_attempt(u1, from_statuses={"pending"})
        store.request_cancel(target_type="unit", target_id=u1, reason="stop")
        store.transition_unit(u1, to_status="failed", from_statuses={"running"}, last_error="boom")
        assert store.is_cancel_requested(target_type="unit", target_id=u1)

        store.reset_units(unit_ids=[u1], from_statuses={"failed"})
        assert not store.is_cancel_requested(target_type="unit", target_id=u1)
    finally:
        store.close()


def test_reconcile_running_units_resets_to_pending_and_records_event(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        batch_id, (u1, u2) = _seed(store)
        other_batch, (o1,) = _seed(store, 1)
        for unit_id in (u1, o1):
            store.begin_attempt(unit_id, from_statuses={"pending"})

        reconciled = store.reconcile_running_units(reason="server_restarted", exclude_batch_ids=[other_batch])
        assert reconciled == [u1]

        row = store.get_unit(unit_id=u1)
        assert row["status"] == "pending"
        assert int(row["attempt_count"]) == 1
        assert store.get_unit(unit_id=o1)["status"] == "running"
        assert store.get_unit(unit_id=u2)["status"] == "pending"

        evt = store.get_latest_event(unit_id=u1, event_type="unit_reset")
        assert evt is not None
        assert json.loads(evt["payload_json"])["reason"] == "server_restarted"
        assert batch_id != other_batch
    finally:
        store.close()


def test_find_stale_running_units_uses_updated_at(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, u2) = _seed(store)
        store.begin_attempt(u1, from_statuses={"pending"})
        store.begin_attempt(u2, from_statuses={"pending"})
        store._conn.execute("UPDATE units SET updated_at = updated_at - 1000 WHERE unit_id = ?;", (u1,))
        store._conn.commit()

        stale = [r["unit_id"] for r in store.find_stale_running_units(older_than_s=500)]
        assert stale == [u1]
        # A progress checkpoint refreshes liveness.
        store.touch_unit(u1)
        assert store.find_stale_running_units(older_than_s=500) == []
    finally:
        store.close()


def test_events_page_is_oldest_first_with_cursor(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        _batch_id, (u1, _u2) = _seed(store)
        for i in range(5):
            store.append_event(u1, "progress", {"i": i})

        page1 = store.list_events_page(unit_id=u1, limit=3, cursor=None, event_types=["progress"])
        assert [e["payload"]["i"] for e in page1["items"]] == [0, 1, 2]
        assert page1["has_more"] is True

        page2 = store.list_events_page(unit_id=u1, limit=3, cursor=page1["next_cursor"], event_types=["progress"])
        assert [e["payload"]["i"] for e in page2["items"]] == [3, 4]
        assert page2["has_more"] is False
        assert page2["next_cursor"] is None
    finally:
        store.close()


def test_update_batch_status_conditional(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        batch_id, _units = _seed(store)
        assert store.update_batch_status(batch_id, "cancelled", from_statuses={"pending", "processing"})
        assert not store.update_batch_status(batch_id, "complete", from_statuses={"pending", "processing"})
        batch = store.get_batch(batch_id=batch_id)
        assert batch["status"] == "cancelled"
        assert batch["ended_at"] is not None
    finally:
        store.close()


def test_reset_units_reopens_terminal_batch(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        batch_id, (u1, u2) = _seed(store, max_attempts=1)
        store.begin_attempt(u1, from_statuses={"pending"})
        store.transition_unit(u1, to_status="failed", from_statuses={"running"}, last_error="boom")
        store.begin_attempt(u2, from_statuses={"pending"})
        store.transition_unit(u2, to_status="complete", from_statuses={"running"}, result={"ok": True})
        store.update_batch_status(batch_id, "failed")
        assert store.get_batch(batch_id=batch_id)["ended_at"] is not None

        assert store.reset_units(unit_ids=[u1], from_statuses={"failed"}) == [u1]
        batch = store.get_batch(batch_id=batch_id)
        assert batch["status"] == "processing"
        assert batch["ended_at"] is None

        # A cancelled batch stays cancelled; reopening it is the caller's decision.
        store.update_batch_status(batch_id, "cancelled")
        store.transition_unit(u1, to_status="cancelled", from_statuses={"pending"})
        store.reset_units(unit_ids=[u1], from_statuses={"cancelled"})
        assert store.get_batch(batch_id=batch_id)["status"] == "cancelled"
    finally:
        store.close()


def test_reconcile_settles_orphans_of_cancelled_batches(db_path: str) -> None:
    store = SQLiteStore(db_path)
    try:
        live_batch, (u1,) = _seed(store, 1)
        dead_batch, (d1,) = _seed(store, 1)
        store.update_batch_status(live_batch, "processing")
        for unit_id in (u1, d1):
            store.begin_attempt(unit_id, from_statuses={"pending"})
        store.update_batch_status(dead_batch, "cancelled")

        assert store.reconcile_running_units() == [u1]
        assert store.get_unit(unit_id=u1)["status"] == "pending"
        settled = store.get_unit(unit_id=d1)
        assert settled["status"] == "cancelled"
        assert settled["ended_at"] is not None
        evt = store.get_latest_event(unit_id=d1, event_type="unit_cancelled")
        assert json.loads(evt["payload_json"]) == {"reason": "batch_cancelled", "while": "orphaned"}
        assert store.get_batch(batch_id=dead_batch)["status"] == "cancelled"
    finally:
        store.close()
