from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 2

BATCH_KINDS = frozenset({"discovery", "enrichment", "artifact"})
BATCH_STATUSES = frozenset({"pending", "processing", "complete", "failed", "cancelled"})
UNIT_STATUSES = frozenset({"pending", "running", "complete", "failed", "cancelled"})
ACTIVE_UNIT_STATUSES = frozenset({"pending", "running"})
TERMINAL_UNIT_STATUSES = frozenset({"complete", "failed", "cancelled"})
TERMINAL_BATCH_STATUSES = frozenset({"complete", "failed", "cancelled"})

_UNIT_COLUMNS = (
    "unit_id, batch_id, unit_index, status, attempt_count, max_attempts, last_error, "
    "input_json, resumable_state_json, result_json, current_step, "
    "created_at, updated_at, started_at, ended_at"
)
_BATCH_COLUMNS = "batch_id, kind, name, status, created_at, started_at, ended_at, config_json, error"

# Columns writable through `update_unit`; JSON columns are addressed by their logical name.
_UNIT_PLAIN_FIELDS = frozenset({"status", "attempt_count", "max_attempts", "last_error", "current_step"})
_UNIT_JSON_FIELDS = {"input": "input_json", "resumable_state": "resumable_state_json", "result": "result_json"}


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(str(raw))
    except ValueError:
        return default


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join(["?"] * len(list(values)))


def default_db_path() -> str:
    return os.getenv("OUTREACH_SQLITE_PATH", "data/app.db")


@dataclass(frozen=True)
class BatchRecord:
    batch_id: str
    kind: str
    name: str
    created_at: float
    status: str


@dataclass(frozen=True)
class UnitRecord:
    unit_id: str
    batch_id: str
    unit_index: int
    created_at: float
    status: str
    attempt_count: int
    max_attempts: int


def batch_to_item(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "batch_id": row["batch_id"],
        "kind": row["kind"],
        "name": row["name"],
        "status": row["status"],
        "created_at": float(row["created_at"]),
        "started_at": float(row["started_at"]) if row["started_at"] is not None else None,
        "ended_at": float(row["ended_at"]) if row["ended_at"] is not None else None,
        "config_snapshot": _json_loads(row["config_json"], {}),
        "error": row["error"],
    }


def unit_to_item(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "unit_id": row["unit_id"],
        "batch_id": row["batch_id"],
        "unit_index": int(row["unit_index"]),
        "status": row["status"],
        "attempt_count": int(row["attempt_count"]),
        "max_attempts": int(row["max_attempts"]),
        "last_error": row["last_error"],
        "input": _json_loads(row["input_json"], {}),
        "resumable_state": _json_loads(row["resumable_state_json"], {}),
        "result": _json_loads(row["result_json"], None),
        "current_step": row["current_step"],
        "created_at": float(row["created_at"]),
        "updated_at": float(row["updated_at"]),
        "started_at": float(row["started_at"]) if row["started_at"] is not None else None,
        "ended_at": float(row["ended_at"]) if row["ended_at"] is not None else None,
    }


class SQLiteStore:
    """SQLite-backed status store for batches, units and their trace events.

    Design constraints:
    - Single logical writer per batch; one connection per thread.
    - Every status write targets a single unit/batch row by id. Transitions are
      conditional (`... AND status IN (...)`) so a stale writer cannot resurrect
      a cancelled or completed record.
    - Progress and state changes are program-recorded into `unit_events`.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")
        self._conn.execute("PRAGMA busy_timeout = 30000;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, which gives the caller a
        consistent snapshot across several rows (used by the batch finalizer).
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _commit(self) -> None:
        if not self._conn.in_transaction:
            return
        self._conn.commit()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): batches/units/unit_events/cancel_requests.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS batches (
              batch_id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              name TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL,
              config_json TEXT NOT NULL,
              error TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS units (
              unit_id TEXT PRIMARY KEY,
              batch_id TEXT NOT NULL,
              unit_index INTEGER NOT NULL,
              status TEXT NOT NULL,
              attempt_count INTEGER NOT NULL DEFAULT 0,
              max_attempts INTEGER NOT NULL,
              last_error TEXT,
              input_json TEXT NOT NULL,
              resumable_state_json TEXT NOT NULL DEFAULT '{}',
              result_json TEXT,
              current_step TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              started_at REAL,
              ended_at REAL,
              CHECK (attempt_count >= 0 AND attempt_count <= max_attempts),
              FOREIGN KEY (batch_id) REFERENCES batches(batch_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS unit_events (
              event_id TEXT PRIMARY KEY,
              unit_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              event_type TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              FOREIGN KEY (unit_id) REFERENCES units(unit_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cancel_requests (
              cancel_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              target_type TEXT NOT NULL,
              target_id TEXT NOT NULL,
              status TEXT NOT NULL,
              reason TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_units_batch ON units(batch_id, unit_index);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_unit_events_unit_ts ON unit_events(unit_id, created_at);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_cancel_target ON cancel_requests(target_type, target_id, created_at);"
        )

        # New databases start at schema_version=1, then migrate explicitly up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE;")
        try:
            # Another connection may have migrated while we waited for the lock.
            current = self._get_schema_version()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Idempotency table for POST /batches (API-level retries).
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_batches_status_created ON batches(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_units_status_updated ON units(status, updated_at);")
        # Stable pagination: disambiguate same-timestamp events by event_id.
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_unit_events_unit_ts_id ON unit_events(unit_id, created_at, event_id);"
        )

    # --- Idempotency
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(
        self, *, key: str, request_hash: str, response_json: str, commit: bool = True
    ) -> None:
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, created_at, request_hash, response_json),
        )
        if commit:
            self._commit()

    # --- Batches
    def get_batch(self, *, batch_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_BATCH_COLUMNS} FROM batches WHERE batch_id = ? LIMIT 1;",
            (batch_id,),
        ).fetchone()

    def create_batch_with_units(
        self,
        *,
        kind: str,
        name: str,
        inputs: list[dict[str, Any]],
        max_attempts: int,
        config: dict[str, Any],
        commit: bool = True,
    ) -> tuple[BatchRecord, list[UnitRecord]]:
        """Create a batch and its pending units as one logical operation."""
        if kind not in BATCH_KINDS:
            raise ValueError(f"Invalid batch kind: {kind!r}")
        if not inputs:
            raise ValueError("A batch needs at least one unit.")
        if int(max_attempts) < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        batch_id = _new_id("batch")
        created_at = _utc_ts()
        own_tx = commit and not self._conn.in_transaction
        if own_tx:
            self._conn.execute("BEGIN IMMEDIATE;")
        try:
            self._conn.execute(
                """
                INSERT INTO batches(batch_id, kind, name, status, created_at, config_json)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (batch_id, kind, name, "pending", created_at, _json_dumps(config)),
            )
            units: list[UnitRecord] = []
            for i, unit_input in enumerate(inputs):
                unit_id = _new_id("unit")
                self._conn.execute(
                    """
                    INSERT INTO units(
                      unit_id, batch_id, unit_index, status, attempt_count, max_attempts,
                      input_json, resumable_state_json, created_at, updated_at
                    ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        unit_id,
                        batch_id,
                        i + 1,
                        "pending",
                        0,
                        int(max_attempts),
                        _json_dumps(dict(unit_input)),
                        "{}",
                        created_at,
                        created_at,
                    ),
                )
                units.append(
                    UnitRecord(
                        unit_id=unit_id,
                        batch_id=batch_id,
                        unit_index=i + 1,
                        created_at=created_at,
                        status="pending",
                        attempt_count=0,
                        max_attempts=int(max_attempts),
                    )
                )
            if own_tx:
                self._conn.commit()
        except Exception:
            if own_tx:
                self._conn.rollback()
            raise

        batch = BatchRecord(batch_id=batch_id, kind=kind, name=name, created_at=created_at, status="pending")
        return batch, units

    def update_batch_status(
        self,
        batch_id: str,
        status: str,
        *,
        from_statuses: Iterable[str] | None = None,
        error: str | None = None,
        reset_ended_at: bool = False,
        commit: bool = True,
    ) -> bool:
        """Set a batch status, optionally only when the current status is in `from_statuses`.

        Returns True when a row was updated.
        """
        if status not in BATCH_STATUSES:
            raise ValueError(f"Invalid batch status: {status!r}")
        ts = _utc_ts()
        started_at = ts if status == "processing" else None
        ended_at = ts if status in TERMINAL_BATCH_STATUSES else None

        where = ["batch_id = ?"]
        params: list[Any] = [batch_id]
        if from_statuses is not None:
            allowed = sorted(set(from_statuses))
            if not allowed:
                return False
            where.append(f"status IN ({_placeholders(allowed)})")
            params.extend(allowed)

        ended_sql = "?" if reset_ended_at else "COALESCE(ended_at, ?)"
        updated = self._conn.execute(
            f"""
            UPDATE batches
            SET
              status = ?,
              started_at = COALESCE(started_at, ?),
              ended_at = {ended_sql},
              error = COALESCE(?, error)
            WHERE {" AND ".join(where)};
            """,
            (status, started_at, ended_at, error, *params),
        )
        if commit:
            self._commit()
        return updated.rowcount == 1

    def list_batches_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
        kind: str | None = None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if statuses:
            where.append(f"status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        if kind:
            where.append("kind = ?")
            params.append(kind)

        if cursor is not None:
            created_at, batch_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND batch_id < ?))")
            params.extend([float(created_at), float(created_at), str(batch_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {_BATCH_COLUMNS}
            FROM batches
            WHERE {where_sql}
            ORDER BY created_at DESC, batch_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [batch_to_item(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["batch_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_batches_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM batches GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def list_batch_ids(self, *, statuses: Iterable[str]) -> list[str]:
        allowed = sorted(set(statuses))
        if not allowed:
            return []
        rows = self._conn.execute(
            f"SELECT batch_id FROM batches WHERE status IN ({_placeholders(allowed)}) ORDER BY created_at;",
            allowed,
        ).fetchall()
        return [str(r["batch_id"]) for r in rows]

    # --- Units
    def get_unit(self, *, unit_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_UNIT_COLUMNS} FROM units WHERE unit_id = ? LIMIT 1;",
            (unit_id,),
        ).fetchone()

    def find_units(self, *, batch_id: str, statuses: Iterable[str] | None = None) -> list[sqlite3.Row]:
        where = ["batch_id = ?"]
        params: list[Any] = [batch_id]
        if statuses is not None:
            allowed = sorted(set(statuses))
            if not allowed:
                return []
            where.append(f"status IN ({_placeholders(allowed)})")
            params.extend(allowed)
        return self._conn.execute(
            f"""
            SELECT {_UNIT_COLUMNS}
            FROM units
            WHERE {" AND ".join(where)}
            ORDER BY unit_index;
            """,
            params,
        ).fetchall()

    def list_unit_ids(self, *, batch_id: str, statuses: Iterable[str] | None = None) -> list[str]:
        return [str(r["unit_id"]) for r in self.find_units(batch_id=batch_id, statuses=statuses)]

    def count_units(self, *, batch_id: str, statuses: Iterable[str] | None = None) -> int:
        where = ["batch_id = ?"]
        params: list[Any] = [batch_id]
        if statuses is not None:
            allowed = sorted(set(statuses))
            if not allowed:
                return 0
            where.append(f"status IN ({_placeholders(allowed)})")
            params.extend(allowed)
        row = self._conn.execute(
            f"SELECT COUNT(*) AS n FROM units WHERE {' AND '.join(where)};",
            params,
        ).fetchone()
        return int(row["n"]) if row is not None else 0

    def count_units_by_status(self, *, batch_id: str | None = None) -> dict[str, int]:
        if batch_id is None:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM units GROUP BY status ORDER BY status;",
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS n FROM units WHERE batch_id = ? GROUP BY status ORDER BY status;",
                (batch_id,),
            ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def update_unit(self, unit_id: str, **fields: Any) -> bool:
        """Partial, last-write-wins update of a single unit row.

        Accepts plain columns (status, attempt_count, last_error, ...) and the
        JSON columns by logical name (input, resumable_state, result).
        """
        if not fields:
            return False
        sets: list[str] = []
        params: list[Any] = []
        for key, value in fields.items():
            if key in _UNIT_PLAIN_FIELDS:
                if key == "status" and value not in UNIT_STATUSES:
                    raise ValueError(f"Invalid unit status: {value!r}")
                sets.append(f"{key} = ?")
                params.append(value)
            elif key in _UNIT_JSON_FIELDS:
                sets.append(f"{_UNIT_JSON_FIELDS[key]} = ?")
                params.append(_json_dumps(value) if value is not None else None)
            else:
                raise ValueError(f"Unknown unit field: {key!r}")
        sets.append("updated_at = ?")
        params.append(_utc_ts())

        updated = self._conn.execute(
            f"UPDATE units SET {', '.join(sets)} WHERE unit_id = ?;",
            (*params, unit_id),
        )
        self._commit()
        return updated.rowcount == 1

    def touch_unit(self, unit_id: str) -> None:
        """Bump `updated_at`; progress checkpoints use it as a liveness signal."""
        self._conn.execute("UPDATE units SET updated_at = ? WHERE unit_id = ?;", (_utc_ts(), unit_id))
        self._commit()

    def transition_unit(
        self,
        unit_id: str,
        *,
        to_status: str,
        from_statuses: Iterable[str],
        last_error: str | None = None,
        result: Any = None,
        clear_step: bool = True,
    ) -> bool:
        """Conditionally move a unit to `to_status`.

        The update only applies when the current status is one of `from_statuses`;
        returns False otherwise (e.g. a cancelled unit is never resurrected).
        """
        if to_status not in UNIT_STATUSES:
            raise ValueError(f"Invalid unit status: {to_status!r}")
        allowed = sorted(set(from_statuses))
        if not allowed:
            return False
        ts = _utc_ts()
        ended_at = ts if to_status in TERMINAL_UNIT_STATUSES else None

        updated = self._conn.execute(
            f"""
            UPDATE units
            SET
              status = ?,
              last_error = COALESCE(?, last_error),
              result_json = COALESCE(?, result_json),
              current_step = CASE WHEN ? THEN NULL ELSE current_step END,
              ended_at = COALESCE(?, ended_at),
              updated_at = ?
            WHERE unit_id = ? AND status IN ({_placeholders(allowed)});
            """,
            (
                to_status,
                last_error,
                _json_dumps(result) if result is not None else None,
                1 if clear_step else 0,
                ended_at,
                ts,
                unit_id,
                *allowed,
            ),
        )
        self._commit()
        return updated.rowcount == 1

    def record_unit_error(self, unit_id: str, *, error: str, step: str | None = None) -> bool:
        """Persist the error of a failed attempt while the unit is still owned by its attempt loop."""
        updated = self._conn.execute(
            """
            UPDATE units
            SET last_error = ?, current_step = ?, updated_at = ?
            WHERE unit_id = ? AND status = 'running';
            """,
            (error, step, _utc_ts(), unit_id),
        )
        self._commit()
        return updated.rowcount == 1

    def begin_attempt(self, unit_id: str, *, from_statuses: Iterable[str], step: str | None = None) -> sqlite3.Row | None:
        """Atomically mark a unit running, increment attempt_count and clear last_error.

        Applies only while budget remains and the current status is allowed.
        Returns the updated row, or None when the unit could not be claimed.
        """
        allowed = sorted(set(from_statuses))
        if not allowed:
            return None
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            updated = self._conn.execute(
                f"""
                UPDATE units
                SET
                  status = 'running',
                  attempt_count = attempt_count + 1,
                  last_error = NULL,
                  current_step = ?,
                  started_at = COALESCE(started_at, ?),
                  ended_at = NULL,
                  updated_at = ?
                WHERE unit_id = ?
                  AND status IN ({_placeholders(allowed)})
                  AND attempt_count < max_attempts;
                """,
                (step, ts, ts, unit_id, *allowed),
            )
            if updated.rowcount != 1:
                return None
            return self.get_unit(unit_id=unit_id)

    def save_unit_state(self, unit_id: str, key: str, value: Any) -> dict[str, Any]:
        """Merge one key into the unit's resumable state and persist it."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                "SELECT resumable_state_json FROM units WHERE unit_id = ? LIMIT 1;",
                (unit_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown unit: {unit_id}")
            state = _json_loads(row["resumable_state_json"], {})
            if not isinstance(state, dict):
                state = {}
            state[str(key)] = value
            self._conn.execute(
                "UPDATE units SET resumable_state_json = ?, updated_at = ? WHERE unit_id = ?;",
                (_json_dumps(state), _utc_ts(), unit_id),
            )
        return state

    def cancel_pending_units(self, *, batch_id: str, reason: str) -> list[str]:
        """Mark every pending unit of a batch cancelled; running units are left untouched."""
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                "SELECT unit_id FROM units WHERE batch_id = ? AND status = 'pending' ORDER BY unit_index;",
                (batch_id,),
            ).fetchall()
            cancelled: list[str] = []
            for r in rows:
                unit_id = str(r["unit_id"])
                updated = self._conn.execute(
                    """
                    UPDATE units
                    SET status = 'cancelled', current_step = NULL, ended_at = ?, updated_at = ?
                    WHERE unit_id = ? AND status = 'pending';
                    """,
                    (ts, ts, unit_id),
                )
                if updated.rowcount != 1:
                    continue
                self._insert_event(unit_id, "unit_cancelled", {"reason": reason, "while": "pending"}, ts=ts)
                cancelled.append(unit_id)
        return cancelled

    def reset_units(
        self,
        *,
        unit_ids: Iterable[str],
        from_statuses: Iterable[str],
        reset_attempts: bool = False,
        clear_state: bool = False,
        reason: str = "reset",
        commit: bool = True,
    ) -> list[str]:
        """Explicit external reset of units back to `pending`.

        `attempt_count` is preserved unless `reset_attempts` is set; resumable
        state is preserved unless `clear_state` is set. A `complete`/`failed`
        batch that receives a pending unit is moved back to `processing` in the
        same transaction, so a terminal batch never holds a non-terminal unit.
        Cancelled batches are left to the caller.
        """
        allowed = sorted(set(from_statuses))
        ids = [str(u) for u in unit_ids]
        if not allowed or not ids:
            return []
        ts = _utc_ts()
        reset: list[str] = []
        reopen: set[str] = set()
        own_tx = commit and not self._conn.in_transaction
        if own_tx:
            self._conn.execute("BEGIN IMMEDIATE;")
        try:
            for unit_id in ids:
                updated = self._conn.execute(
                    f"""
                    UPDATE units
                    SET
                      status = 'pending',
                      attempt_count = CASE WHEN ? THEN 0 ELSE attempt_count END,
                      resumable_state_json = CASE WHEN ? THEN '{{}}' ELSE resumable_state_json END,
                      result_json = NULL,
                      last_error = NULL,
                      current_step = NULL,
                      started_at = NULL,
                      ended_at = NULL,
                      updated_at = ?
                    WHERE unit_id = ? AND status IN ({_placeholders(allowed)});
                    """,
                    (1 if reset_attempts else 0, 1 if clear_state else 0, ts, unit_id, *allowed),
                )
                if updated.rowcount != 1:
                    continue
                # A reset unit starts clean: stale unit-level cancel requests no longer apply.
                self._conn.execute(
                    """
                    UPDATE cancel_requests
                    SET status = 'acknowledged'
                    WHERE target_type = 'unit' AND target_id = ? AND status = 'requested';
                    """,
                    (unit_id,),
                )
                self._insert_event(
                    unit_id,
                    "unit_reset",
                    {"reason": reason, "reset_attempts": bool(reset_attempts), "clear_state": bool(clear_state)},
                    ts=ts,
                )
                reset.append(unit_id)
                row = self._conn.execute("SELECT batch_id FROM units WHERE unit_id = ?;", (unit_id,)).fetchone()
                reopen.add(str(row["batch_id"]))

            for batch_id in sorted(reopen):
                self.update_batch_status(
                    batch_id,
                    "processing",
                    from_statuses={"complete", "failed"},
                    reset_ended_at=True,
                    commit=False,
                )
            if own_tx:
                self._conn.commit()
        except Exception:
            if own_tx:
                self._conn.rollback()
            raise
        return reset

    def find_stale_running_units(self, *, older_than_s: float, now: float | None = None) -> list[sqlite3.Row]:
        """Units `running` without any progress write for longer than `older_than_s`."""
        cutoff = float(now if now is not None else _utc_ts()) - float(older_than_s)
        return self._conn.execute(
            f"""
            SELECT {_UNIT_COLUMNS}
            FROM units
            WHERE status = 'running' AND updated_at < ?
            ORDER BY updated_at ASC, unit_id ASC;
            """,
            (cutoff,),
        ).fetchall()

    def settle_orphan_as_cancelled(self, unit_id: str, *, reason: str, commit: bool = True) -> bool:
        """Move an orphaned `running` unit of a cancelled batch straight to `cancelled`."""
        ts = _utc_ts()
        updated = self._conn.execute(
            """
            UPDATE units
            SET status = 'cancelled', current_step = NULL, ended_at = ?, updated_at = ?
            WHERE unit_id = ? AND status = 'running';
            """,
            (ts, ts, unit_id),
        )
        if updated.rowcount != 1:
            return False
        self._insert_event(unit_id, "unit_cancelled", {"reason": reason, "while": "orphaned"}, ts=ts)
        if commit:
            self._commit()
        return True

    def reconcile_running_units(
        self, *, reason: str = "process_restarted", exclude_batch_ids: Iterable[str] = ()
    ) -> list[str]:
        """Recover orphaned `running` units; returns the ids reset to `pending`.

        Units of a cancelled batch are settled as `cancelled` (the batch is
        sticky and would never dispatch them again); all others go back to
        `pending` with attempt_count preserved. Only safe for batches with no
        live attempt loop, e.g. at process startup under the single-writer
        assumption.
        """
        excluded = set(exclude_batch_ids)
        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                """
                SELECT u.unit_id, u.batch_id, b.status AS batch_status
                FROM units u JOIN batches b ON b.batch_id = u.batch_id
                WHERE u.status = 'running'
                ORDER BY u.updated_at;
                """
            ).fetchall()
            candidates = [r for r in rows if str(r["batch_id"]) not in excluded]
            for r in candidates:
                if str(r["batch_status"]) == "cancelled":
                    self.settle_orphan_as_cancelled(str(r["unit_id"]), reason="batch_cancelled", commit=False)
            to_reset = [str(r["unit_id"]) for r in candidates if str(r["batch_status"]) != "cancelled"]
            return self.reset_units(unit_ids=to_reset, from_statuses={"running"}, reason=reason, commit=False)

    # --- Events (trace)
    def _insert_event(self, unit_id: str, event_type: str, payload: dict[str, Any], *, ts: float | None = None) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO unit_events(event_id, unit_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, unit_id, float(ts if ts is not None else _utc_ts()), event_type, _json_dumps(payload)),
        )
        return event_id

    def append_event(self, unit_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = self._insert_event(unit_id, event_type, payload)
        self._commit()
        return event_id

    def iter_events(self, unit_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT created_at, event_type, payload_json
            FROM unit_events
            WHERE unit_id = ?
            ORDER BY created_at, event_id;
            """,
            (unit_id,),
        )
        for r in rows:
            yield {
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def get_latest_event(self, *, unit_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, unit_id, created_at, event_type, payload_json
            FROM unit_events
            WHERE unit_id = ? AND event_type = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT 1;
            """,
            (unit_id, event_type),
        ).fetchone()

    def count_event_types_for_unit(self, *, unit_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            """
            SELECT event_type, COUNT(*) AS n
            FROM unit_events
            WHERE unit_id = ?
            GROUP BY event_type
            ORDER BY event_type;
            """,
            (unit_id,),
        ).fetchall()
        return {str(r["event_type"]): int(r["n"]) for r in rows}

    def list_events_page(
        self,
        *,
        unit_id: str,
        limit: int,
        cursor: tuple[float, str] | None,
        event_types: list[str] | None,
    ) -> dict[str, Any]:
        where = ["unit_id = ?"]
        params: list[Any] = [unit_id]
        if event_types:
            where.append(f"event_type IN ({_placeholders(event_types)})")
            params.extend(event_types)
        if cursor is not None:
            created_at, event_id = cursor
            # Oldest-first pagination (ASC) so a trace reads in order.
            where.append("(created_at > ? OR (created_at = ? AND event_id > ?))")
            params.extend([float(created_at), float(created_at), str(event_id)])

        fetch_n = int(limit) + 1
        rows = self._conn.execute(
            f"""
            SELECT event_id, unit_id, created_at, event_type, payload_json
            FROM unit_events
            WHERE {" AND ".join(where)}
            ORDER BY created_at ASC, event_id ASC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [
            {
                "event_id": str(r["event_id"]),
                "unit_id": str(r["unit_id"]),
                "created_at": float(r["created_at"]),
                "event_type": str(r["event_type"]),
                "payload": _json_loads(r["payload_json"], {}),
            }
            for r in rows
        ]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["event_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    # --- Cancellation requests (audit trail; unit-level requests are also a checkpoint signal)
    def request_cancel(self, *, target_type: str, target_id: str, reason: str | None = None) -> str:
        if target_type not in {"batch", "unit"}:
            raise ValueError(f"Invalid target_type: {target_type!r}")

        cancel_id = _new_id("cancel")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO cancel_requests(
              cancel_id, created_at, target_type, target_id, status, reason
            ) VALUES(?, ?, ?, ?, ?, ?);
            """,
            (cancel_id, created_at, target_type, target_id, "requested", reason),
        )
        self._commit()
        return cancel_id

    def is_cancel_requested(self, *, target_type: str, target_id: str) -> bool:
        if target_type not in {"batch", "unit"}:
            raise ValueError(f"Invalid target_type: {target_type!r}")
        row = self._conn.execute(
            """
            SELECT 1 FROM cancel_requests
            WHERE target_type = ? AND target_id = ? AND status = 'requested'
            LIMIT 1;
            """,
            (target_type, target_id),
        ).fetchone()
        return row is not None

    def acknowledge_cancel(self, *, target_type: str, target_id: str) -> None:
        if target_type not in {"batch", "unit"}:
            raise ValueError(f"Invalid target_type: {target_type!r}")
        self._conn.execute(
            """
            UPDATE cancel_requests
            SET status = 'acknowledged'
            WHERE target_type = ? AND target_id = ? AND status = 'requested';
            """,
            (target_type, target_id),
        )
        self._commit()
