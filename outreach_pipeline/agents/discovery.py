from __future__ import annotations

from typing import Any

from outreach_pipeline.agents.llm_calls import LazyLLM, LLMFactory, chat_json
from outreach_pipeline.agents.types import AgentError, UnitContext
from outreach_pipeline.config.load_config import AgentsConfig
from outreach_pipeline.utils.template import render_template


RECOMMENDATIONS = {"HOME", "OFFICE", "COURIER"}

_SYSTEM = "You are a careful research assistant. Answer with a single JSON object and nothing else."


def _address(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict) or not str(raw.get("address") or "").strip():
        return None
    return {
        "address": str(raw["address"]).strip(),
        "confidence": _confidence(raw.get("confidence")),
        "reasoning": str(raw.get("reasoning") or ""),
    }


def _confidence(raw: Any) -> float:
    try:
        v = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return min(1.0, max(0.0, v))


def normalize_discovery(parsed: dict[str, Any]) -> dict[str, Any]:
    recommendation = str(parsed.get("recommendation") or "").strip().upper()
    if recommendation not in RECOMMENDATIONS:
        raise AgentError(f"Unknown recommendation: {parsed.get('recommendation')!r}")
    flags = parsed.get("flags") or []
    return {
        "recommendation": recommendation,
        "confidence": _confidence(parsed.get("confidence")),
        "reasoning": str(parsed.get("reasoning") or ""),
        "person_name": str(parsed.get("person_name") or "") or None,
        "office_address": _address(parsed.get("office_address")),
        "home_address": _address(parsed.get("home_address")),
        "career_summary": str(parsed.get("career_summary") or "") or None,
        "flags": [str(f) for f in flags] if isinstance(flags, list) else [],
    }


class DiscoveryAgent:
    """Decide where a physical item for one profile should be mailed."""

    kind = "discovery"

    def __init__(self, *, config: AgentsConfig, llm_factory: LLMFactory) -> None:
        self._config = config
        self._llm = LazyLLM(llm_factory)

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ctx.progress("agent_started", {"agent": self.kind}, step="Researching profile")
        user = render_template(
            self._config.discovery_prompt_template,
            {
                "profile_ref": unit_input.get("profile_ref", ""),
                "name": unit_input.get("name", ""),
                "company": unit_input.get("company", ""),
            },
        )
        parsed = chat_json(
            ctx,
            self._llm.get(),
            agent=self.kind,
            system=_SYSTEM,
            user=user,
            temperature=self._config.temperature,
        )
        ctx.progress("agent_parsed", {"agent": self.kind}, step="Validating recommendation")
        return normalize_discovery(parsed)
