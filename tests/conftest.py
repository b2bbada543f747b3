from __future__ import annotations

import sys
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest


# Ensure `import outreach_pipeline...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from outreach_pipeline.agents.types import AgentError, UnitContext  # noqa: E402
from outreach_pipeline.config.load_config import AppConfig, PipelineConfig, load_app_config  # noqa: E402


class ScriptedRunner:
    """In-memory agent runner driven by a per-profile script.

    `script[profile_ref]` is a list consumed one entry per attempt:
    "ok" (return a result), "fail" (raise AgentError), "empty" (return {}),
    or a callable `(unit_input, ctx) -> dict`. Profiles without a script succeed.
    """

    def __init__(
        self,
        kind: str = "enrichment",
        script: dict[str, list[Any]] | None = None,
        *,
        hold: threading.Event | None = None,
        work_s: float = 0.0,
    ) -> None:
        self.kind = kind
        self._script = {k: list(v) for k, v in (script or {}).items()}
        self._hold = hold
        self._work_s = work_s
        self._lock = threading.Lock()
        self.calls: list[tuple[str, int]] = []
        self.active = 0
        self.max_active = 0

    def _next(self, ref: str) -> Any:
        with self._lock:
            steps = self._script.get(ref)
            if not steps:
                return "ok"
            return steps.pop(0)

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ref = str(unit_input.get("profile_ref"))
        with self._lock:
            self.calls.append((ref, ctx.attempt))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            ctx.progress("agent_started", {"agent": self.kind}, step="Working")
            if self._hold is not None:
                # Parked until the test releases it; cancellation is observed right after.
                while not self._hold.wait(0.01):
                    ctx.check_cancelled()
                ctx.progress("agent_resumed", {"agent": self.kind})
            if self._work_s > 0:
                time.sleep(self._work_s)
            step = self._next(ref)
            if callable(step):
                return step(unit_input, ctx)
            if step == "fail":
                raise AgentError(f"scripted failure for {ref} (attempt {ctx.attempt})")
            if step == "empty":
                return {}
            return {"profile_ref": ref, "attempt": ctx.attempt}
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "app.db")


@pytest.fixture()
def app_config() -> AppConfig:
    """Repo default config with zero backoff so retries do not sleep."""
    cfg = load_app_config(REPO_ROOT / "config" / "default.toml")
    fast = replace(cfg.pipeline, backoff_base_seconds=0)
    kinds = {k: replace(v, backoff_base_seconds=0) for k, v in cfg.kinds.items()}
    return replace(cfg, pipeline=fast, kinds=kinds)


@pytest.fixture()
def fast_pipeline() -> Callable[..., PipelineConfig]:
    def _make(**overrides: Any) -> PipelineConfig:
        base = {"concurrency_ceiling": 3, "max_attempts": 5, "backoff_base_seconds": 0}
        base.update(overrides)
        return PipelineConfig(**base)

    return _make
