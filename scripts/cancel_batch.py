#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from outreach_pipeline.runtime.cancellation import CancellationPropagator  # noqa: E402
from outreach_pipeline.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel a batch (SQLite-backed); running units stop at their next checkpoint.")
    p.add_argument("--batch-id", required=True, help="Batch id to cancel (e.g. batch_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env OUTREACH_SQLITE_PATH or data/app.db).")
    p.add_argument("--reason", default="user_cancel", help="Optional reason to record.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        result = CancellationPropagator().cancel_batch(store, batch_id=str(args.batch_id), reason=str(args.reason))
        if result is None:
            print(f"Batch not found: {args.batch_id}", file=sys.stderr)
            return 1
        print(
            f"status={result.status} cancelled_units={len(result.cancelled_unit_ids)} "
            f"running_units={len(result.running_unit_ids)}"
        )
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
