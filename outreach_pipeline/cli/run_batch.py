from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from outreach_pipeline.config.load_config import load_app_config
from outreach_pipeline.runtime.service import PipelineError, PipelineService
from outreach_pipeline.storage.sqlite_store import BATCH_KINDS


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a batch and drive it to a terminal status.")
    parser.add_argument("--kind", required=True, choices=sorted(BATCH_KINDS), help="Pipeline phase to run.")
    parser.add_argument(
        "--input",
        action="append",
        default=[],
        metavar="PROFILE_REF",
        help="Profile reference; repeat for several units.",
    )
    parser.add_argument(
        "--input-file",
        default="",
        help="JSON list or JSONL file of unit inputs (objects with at least `profile_ref`).",
    )
    parser.add_argument("--name", default="", help="Optional batch name.")
    parser.add_argument("--max-attempts", type=int, default=None, help="Override pipeline.max_attempts.")
    parser.add_argument("--concurrency", type=int, default=None, help="Override pipeline.concurrency_ceiling.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env OUTREACH_SQLITE_PATH or data/app.db).",
    )
    parser.add_argument("--config", default="", help="Config path (default: env OUTREACH_CONFIG_PATH).")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not call the LLM. Synthetic agents write placeholder results for pipeline testing.",
    )
    parser.add_argument("--verbose", action="store_true", help="Print every progress checkpoint.")
    return parser.parse_args(argv)


def _load_inputs(args: argparse.Namespace) -> list[dict[str, Any]]:
    inputs: list[dict[str, Any]] = [{"profile_ref": str(ref)} for ref in args.input]
    if args.input_file:
        text = Path(args.input_file).expanduser().read_text(encoding="utf-8")
        stripped = text.strip()
        if stripped.startswith("["):
            items = json.loads(stripped)
        else:
            items = [json.loads(line) for line in stripped.splitlines() if line.strip()]
        for item in items:
            if not isinstance(item, dict):
                raise SystemExit(f"Each input must be a JSON object, got: {item!r}")
            inputs.append(item)
    if not inputs:
        raise SystemExit("Provide at least one --input or --input-file.")
    return inputs


def _print_progress(unit_id: str, event_type: str, payload: dict[str, Any]) -> None:
    detail = " ".join(f"{k}={v}" for k, v in payload.items())
    print(f"[{unit_id}] {event_type} {detail}".rstrip(), flush=True)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    inputs = _load_inputs(args)

    app_config = load_app_config(Path(args.config) if args.config else None)
    service = PipelineService(
        db_path=args.db_path or None,
        app_config=app_config,
        on_progress=_print_progress if args.verbose else None,
    )

    try:
        created = service.create_batch(
            kind=args.kind,
            inputs=inputs,
            name=args.name,
            max_attempts=args.max_attempts,
            concurrency_ceiling=args.concurrency,
            dry_run=bool(args.dry_run),
        )
    except PipelineError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    batch_id = str(created["batch"]["batch_id"])
    print(f"batch_id={batch_id} units={len(created['units'])}", flush=True)

    service.start_batch(batch_id)
    try:
        while not service.wait(batch_id, timeout_s=0.5):
            pass
    except KeyboardInterrupt:
        print("Interrupted; cancelling batch (running units stop at their next checkpoint)...", file=sys.stderr)
        service.cancel_batch(batch_id, reason="KeyboardInterrupt")
        service.wait(batch_id)

    batch = service.get_batch(batch_id)
    for unit in service.list_units(batch_id):
        line = f"  #{unit['unit_index']} {unit['unit_id']} {unit['status']} attempts={unit['attempt_count']}/{unit['max_attempts']}"
        if unit.get("last_error"):
            line += f" error={unit['last_error']}"
        print(line)
    print(f"status={batch['status']}")
    return 0 if batch["status"] == "complete" else 1


if __name__ == "__main__":
    raise SystemExit(main())
