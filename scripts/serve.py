#!/usr/bin/env python3
from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from outreach_pipeline.config.load_config import ConfigError, load_app_config  # noqa: E402


def main() -> int:
    try:
        cfg = load_app_config()
        server = cfg.server.with_env_overrides()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        import uvicorn  # type: ignore
    except ImportError as e:
        print("Missing dependency: uvicorn. Install it in your runtime environment.", file=sys.stderr)
        print(str(e), file=sys.stderr)
        return 1

    print(f"Serving outreach-pipeline on http://{server.host}:{server.port} (config: {cfg.source_path})")
    uvicorn.run(
        "outreach_pipeline.api.app:app",
        host=server.host,
        port=server.port,
        reload=server.reload,
        log_level=server.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
