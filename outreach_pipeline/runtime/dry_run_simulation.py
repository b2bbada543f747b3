from __future__ import annotations

import hashlib
import time
from typing import Any

from outreach_pipeline.agents.types import AgentError, AgentRunner, UnitContext


# Dry-run is for pipeline/UI testing, not for real research: every result is
# synthetic and derived deterministically from the profile reference.
#
# Input knobs (all optional):
#   simulate_failures: int  fail the first k attempts (after sub-steps were saved)
#   simulate_empty: bool    return an empty result ("Agent returned no data")
#   step_delay_s: float     pause at every checkpoint; cancellable


def _now_ts() -> float:
    return time.time()


def _digest(profile_ref: str) -> int:
    return int(hashlib.sha256(profile_ref.encode("utf-8")).hexdigest()[:8], 16)


class _DryRunBase:
    kind = ""

    def _checkpoint(self, ctx: UnitContext, unit_input: dict[str, Any], event_type: str, *, step: str, **payload: Any) -> None:
        ctx.progress(event_type, {"dry_run": True, **payload}, step=step)
        delay_s = float(unit_input.get("step_delay_s") or 0.0)
        if delay_s > 0:
            # Token wakes early on an in-process cancel; the next checkpoint observes store-side cancels.
            ctx.cancel.wait(delay_s)
            ctx.check_cancelled()

    @staticmethod
    def _maybe_fail(ctx: UnitContext, unit_input: dict[str, Any]) -> None:
        failures = int(unit_input.get("simulate_failures") or 0)
        if ctx.attempt <= failures:
            raise AgentError(f"DRY RUN simulated failure (attempt {ctx.attempt}/{failures})")

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        result = self._produce(unit_input, ctx)
        self._maybe_fail(ctx, unit_input)
        if bool(unit_input.get("simulate_empty")):
            return {}
        return {"dry_run": True, **result}

    def _produce(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        raise NotImplementedError


class DryRunDiscoveryAgent(_DryRunBase):
    kind = "discovery"

    def _produce(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ref = str(unit_input.get("profile_ref") or "")
        self._checkpoint(ctx, unit_input, "agent_started", step="Researching profile", agent=self.kind)
        h = _digest(ref)
        recommendation = ("HOME", "OFFICE", "COURIER")[h % 3]
        name = str(unit_input.get("name") or f"Synthetic Person {h % 1000}")
        self._checkpoint(ctx, unit_input, "agent_parsed", step="Validating recommendation", agent=self.kind)
        return {
            "recommendation": recommendation,
            "confidence": round(0.5 + (h % 50) / 100.0, 2),
            "reasoning": "DRY RUN: synthetic recommendation derived from the profile reference.",
            "person_name": name,
            "office_address": {"address": f"{h % 900 + 100} Synthetic Ave", "confidence": 0.7, "reasoning": "dry run"},
            "home_address": None,
            "career_summary": None,
            "flags": ["dry_run"],
        }


class DryRunEnrichmentAgent(_DryRunBase):
    kind = "enrichment"

    def _produce(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ref = str(unit_input.get("profile_ref") or "")
        self._checkpoint(ctx, unit_input, "agent_started", step="Researching company", agent=self.kind)
        company = str(unit_input.get("company") or f"Synthetic Co {_digest(ref) % 100}")
        self._checkpoint(ctx, unit_input, "agent_parsed", step="Processing results", agent=self.kind)
        slug = company.lower().replace(" ", "")
        return {
            "company_name": company,
            "company_website": f"https://{slug}.example",
            "company_logo": None,
            "company_mission": "DRY RUN: synthetic mission statement.",
            "company_values": ["curiosity", "ownership"],
            "open_roles": [],
            "office_locations": ["Remote"],
            "team_photos": [],
        }


class DryRunArtifactAgent(_DryRunBase):
    """Same three resumable sub-steps as the real artifact agent, without network calls."""

    kind = "artifact"

    def __init__(self) -> None:
        # How many times each sub-step actually ran (reused steps are not counted).
        self.images_generated = 0
        self.renders = 0

    def _produce(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ref = str(unit_input.get("profile_ref") or "")
        if ctx.has_state("background_prompt"):
            prompt = str(ctx.state["background_prompt"])
            self._checkpoint(ctx, unit_input, "substep_reused", step="Writing background prompt", substep="background_prompt")
        else:
            self._checkpoint(ctx, unit_input, "substep_started", step="Writing background prompt", substep="background_prompt")
            prompt = f"DRY RUN background for {ref}"
            ctx.save_state("background_prompt", prompt)

        if ctx.has_state("background_image"):
            background = dict(ctx.state["background_image"])
            self._checkpoint(ctx, unit_input, "substep_reused", step="Generating background image", substep="background_image")
        else:
            self._checkpoint(ctx, unit_input, "substep_started", step="Generating background image", substep="background_image")
            self.images_generated += 1
            background = {"url": f"https://images.example/dry_run/{_digest(ref):08x}.png", "model": "dry_run"}
            ctx.save_state("background_image", background)

        if ctx.has_state("render"):
            rendered = dict(ctx.state["render"])
            self._checkpoint(ctx, unit_input, "substep_reused", step="Rendering postcard", substep="render")
        else:
            self._checkpoint(ctx, unit_input, "substep_started", step="Rendering postcard", substep="render")
            self.renders += 1
            rendered = {
                "format": "composition",
                "template": unit_input.get("template") or "default",
                "background_url": background["url"],
                "rendered_at": _now_ts(),
            }
            ctx.save_state("render", rendered)
        return {"background_prompt": prompt, "background": background, "artifact": rendered}


def build_dry_run_runner(kind: str) -> AgentRunner:
    if kind == "discovery":
        return DryRunDiscoveryAgent()
    if kind == "enrichment":
        return DryRunEnrichmentAgent()
    if kind == "artifact":
        return DryRunArtifactAgent()
    raise ValueError(f"Unknown unit kind: {kind!r}")
