from __future__ import annotations

import time
from typing import Any, Callable, Protocol

from outreach_pipeline.agents.types import AgentError, UnitContext
from outreach_pipeline.llm.openai_compat import ChatCompletionResult, ImageGenerationResult
from outreach_pipeline.utils.json_extract import JSONExtractionError, extract_first_json_object


class LLMClient(Protocol):
    model: str

    def chat(
        self,
        *,
        system: str,
        user: str,
        temperature: float,
        json_object: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult: ...

    def generate_image(self, *, prompt: str, model: str, size: str) -> ImageGenerationResult: ...


LLMFactory = Callable[[], LLMClient]


def _now_ts() -> float:
    return time.time()


class LazyLLM:
    """Build the client on first use so a missing API key fails the attempt, not construction."""

    def __init__(self, factory: LLMFactory) -> None:
        self._factory = factory
        self._client: LLMClient | None = None

    def get(self) -> LLMClient:
        if self._client is None:
            self._client = self._factory()
        return self._client


def chat_json(
    ctx: UnitContext,
    llm: LLMClient,
    *,
    agent: str,
    system: str,
    user: str,
    temperature: float,
) -> dict[str, Any]:
    """One traced chat call whose response must contain a JSON object."""
    ctx.trace(
        "llm_request",
        {
            "ts": _now_ts(),
            "agent": agent,
            "attempt": ctx.attempt,
            "model": llm.model,
            "temperature": temperature,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
        },
    )
    raw = llm.chat(system=system, user=user, temperature=temperature, json_object=True)
    ctx.trace(
        "llm_response",
        {"ts": _now_ts(), "agent": agent, "attempt": ctx.attempt, "content": raw.content, "raw": raw.raw},
    )
    try:
        return extract_first_json_object(raw.content)
    except JSONExtractionError as e:
        raise AgentError(f"{agent} returned invalid JSON: {e}") from e


def chat_text(
    ctx: UnitContext,
    llm: LLMClient,
    *,
    agent: str,
    system: str,
    user: str,
    temperature: float,
) -> str:
    ctx.trace(
        "llm_request",
        {
            "ts": _now_ts(),
            "agent": agent,
            "attempt": ctx.attempt,
            "model": llm.model,
            "temperature": temperature,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
        },
    )
    raw = llm.chat(system=system, user=user, temperature=temperature)
    ctx.trace(
        "llm_response",
        {"ts": _now_ts(), "agent": agent, "attempt": ctx.attempt, "content": raw.content, "raw": raw.raw},
    )
    if not raw.content:
        raise AgentError(f"{agent} returned an empty response.")
    return raw.content
