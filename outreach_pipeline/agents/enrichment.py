from __future__ import annotations

from typing import Any

from outreach_pipeline.agents.llm_calls import LazyLLM, LLMFactory, chat_json
from outreach_pipeline.agents.types import AgentError, UnitContext
from outreach_pipeline.config.load_config import AgentsConfig
from outreach_pipeline.utils.template import render_template


_SYSTEM = "You research companies from public sources. Answer with a single JSON object and nothing else."


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(x).strip() for x in raw if str(x).strip()]


def _dict_list(raw: Any, keys: tuple[str, ...]) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    out: list[dict[str, Any]] = []
    for item in raw:
        if isinstance(item, dict):
            out.append({k: item.get(k) for k in keys})
    return out


def normalize_enrichment(parsed: dict[str, Any]) -> dict[str, Any]:
    company_name = str(parsed.get("company_name") or "").strip()
    if not company_name:
        raise AgentError("Enrichment result has no company_name.")
    return {
        "company_name": company_name,
        "company_website": parsed.get("company_website") or None,
        "company_logo": parsed.get("company_logo") or None,
        "company_mission": parsed.get("company_mission") or None,
        "company_values": _str_list(parsed.get("company_values")),
        "open_roles": _dict_list(parsed.get("open_roles"), ("title", "location", "level", "url")),
        "office_locations": _str_list(parsed.get("office_locations")),
        "team_photos": _dict_list(parsed.get("team_photos"), ("name", "photo_url", "title")),
    }


class EnrichmentAgent:
    kind = "enrichment"

    def __init__(self, *, config: AgentsConfig, llm_factory: LLMFactory) -> None:
        self._config = config
        self._llm = LazyLLM(llm_factory)

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        ctx.progress("agent_started", {"agent": self.kind}, step="Researching company")
        user = render_template(
            self._config.enrichment_prompt_template,
            {
                "profile_ref": unit_input.get("profile_ref", ""),
                "name": unit_input.get("name", ""),
                "company": unit_input.get("company", ""),
                "title": unit_input.get("title", ""),
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
        ctx.progress("agent_parsed", {"agent": self.kind}, step="Processing results")
        return normalize_enrichment(parsed)
