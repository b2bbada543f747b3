from __future__ import annotations

from outreach_pipeline.agents.artifact import ArtifactAgent
from outreach_pipeline.agents.discovery import DiscoveryAgent
from outreach_pipeline.agents.enrichment import EnrichmentAgent
from outreach_pipeline.agents.llm_calls import LLMFactory
from outreach_pipeline.agents.types import AgentRunner
from outreach_pipeline.config.load_config import AppConfig
from outreach_pipeline.llm.openai_compat import OpenAICompatibleChatClient
from outreach_pipeline.runtime.dry_run_simulation import build_dry_run_runner


def build_runner(
    kind: str,
    *,
    app_config: AppConfig,
    dry_run: bool = False,
    llm_factory: LLMFactory | None = None,
) -> AgentRunner:
    if dry_run:
        return build_dry_run_runner(kind)

    factory = llm_factory or OpenAICompatibleChatClient
    if kind == "discovery":
        return DiscoveryAgent(config=app_config.agents, llm_factory=factory)
    if kind == "enrichment":
        return EnrichmentAgent(config=app_config.agents, llm_factory=factory)
    if kind == "artifact":
        return ArtifactAgent(config=app_config.agents, llm_factory=factory)
    raise ValueError(f"Unknown unit kind: {kind!r}")
