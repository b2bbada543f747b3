from __future__ import annotations

import json
from typing import Any

import pytest

from outreach_pipeline.agents.artifact import ArtifactAgent
from outreach_pipeline.agents.discovery import DiscoveryAgent, normalize_discovery
from outreach_pipeline.agents.enrichment import EnrichmentAgent
from outreach_pipeline.agents.registry import build_runner
from outreach_pipeline.agents.types import AgentError
from outreach_pipeline.config.load_config import AppConfig, PipelineConfig
from outreach_pipeline.llm.openai_compat import ChatCompletionResult, ImageGenerationResult
from outreach_pipeline.runtime.dry_run_simulation import DryRunArtifactAgent, DryRunDiscoveryAgent
from outreach_pipeline.runtime.retry import RetryController
from outreach_pipeline.storage.sqlite_store import SQLiteStore


class FakeLLM:
    model = "fake-model"

    def __init__(self, replies: list[str], *, image_failures: int = 0) -> None:
        self.replies = list(replies)
        self.chat_calls: list[dict[str, Any]] = []
        self.image_calls: list[str] = []
        self._image_failures = image_failures

    def chat(self, *, system: str, user: str, temperature: float, json_object: bool = False, extra: Any = None) -> ChatCompletionResult:
        self.chat_calls.append({"system": system, "user": user, "json_object": json_object})
        content = self.replies.pop(0) if self.replies else ""
        return ChatCompletionResult(content=content, raw={"choices": []})

    def generate_image(self, *, prompt: str, model: str, size: str) -> ImageGenerationResult:
        self.image_calls.append(prompt)
        if len(self.image_calls) <= self._image_failures:
            raise RuntimeError("image backend timeout")
        return ImageGenerationResult(url="https://img.example/bg.png", b64_json=None, revised_prompt=None, raw={})


class FailingRenderer:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def render(self, *, unit_input: dict[str, Any], background: dict[str, Any]) -> dict[str, Any]:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("screenshot service unavailable")
        return {"format": "png", "url": "https://cdn.example/postcard.png", "background_url": background["url"]}


def _seed(db_path: str, kind: str, unit_input: dict[str, Any], *, max_attempts: int = 3) -> str:
    store = SQLiteStore(db_path)
    try:
        _batch, units = store.create_batch_with_units(
            kind=kind, name="a", inputs=[unit_input], max_attempts=max_attempts, config={}
        )
        return units[0].unit_id
    finally:
        store.close()


def _run(db_path: str, unit_id: str, runner: Any) -> Any:
    store = SQLiteStore(db_path)
    try:
        controller = RetryController(
            config=PipelineConfig(concurrency_ceiling=1, max_attempts=3, backoff_base_seconds=0),
            runner=runner,
        )
        return controller.run(store, unit_id=unit_id)
    finally:
        store.close()


def _unit(db_path: str, unit_id: str) -> Any:
    store = SQLiteStore(db_path)
    try:
        return store.get_unit(unit_id=unit_id)
    finally:
        store.close()


def test_normalize_discovery_rejects_unknown_recommendation() -> None:
    with pytest.raises(AgentError):
        normalize_discovery({"recommendation": "PIGEON"})
    out = normalize_discovery({"recommendation": "office", "confidence": 3, "office_address": {"address": " 1 Main St "}})
    assert out["recommendation"] == "OFFICE"
    assert out["confidence"] == 1.0
    assert out["office_address"]["address"] == "1 Main St"
    assert out["home_address"] is None


def test_discovery_agent_retries_on_invalid_json(db_path: str, app_config: AppConfig) -> None:
    llm = FakeLLM(["not json at all", json.dumps({"recommendation": "HOME", "confidence": 0.8})])
    agent = DiscoveryAgent(config=app_config.agents, llm_factory=lambda: llm)
    unit_id = _seed(db_path, "discovery", {"profile_ref": "https://profiles.example/jane", "name": "Jane"})

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "complete"
    assert outcome.attempt_count == 2
    assert "https://profiles.example/jane" in llm.chat_calls[0]["user"]
    assert llm.chat_calls[0]["json_object"] is True
    row = _unit(db_path, unit_id)
    assert json.loads(row["result_json"])["recommendation"] == "HOME"


def test_enrichment_agent_requires_company_name(db_path: str, app_config: AppConfig) -> None:
    llm = FakeLLM([json.dumps({"company_name": ""})] * 3)
    agent = EnrichmentAgent(config=app_config.agents, llm_factory=lambda: llm)
    unit_id = _seed(db_path, "enrichment", {"profile_ref": "p", "company": "Acme"})

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "failed"
    assert _unit(db_path, unit_id)["last_error"] == "Failed after 3 attempts: Enrichment result has no company_name."


def test_artifact_agent_reuses_background_image_across_retries(db_path: str, app_config: AppConfig) -> None:
    llm = FakeLLM(["A calm harbour at dawn"])
    renderer = FailingRenderer(failures=2)
    agent = ArtifactAgent(config=app_config.agents, llm_factory=lambda: llm, renderer=renderer)
    unit_id = _seed(db_path, "artifact", {"profile_ref": "p", "name": "Jane", "company": "Acme"})

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "complete"
    assert outcome.attempt_count == 3
    # The costly steps ran once; only rendering was retried.
    assert len(llm.chat_calls) == 1
    assert llm.image_calls == ["A calm harbour at dawn"]
    assert renderer.calls == 3

    row = _unit(db_path, unit_id)
    state = json.loads(row["resumable_state_json"])
    assert set(state) == {"background_prompt", "background_image", "render"}
    result = json.loads(row["result_json"])
    assert result["artifact"]["url"] == "https://cdn.example/postcard.png"


def test_artifact_agent_retries_image_step_without_redoing_prompt(db_path: str, app_config: AppConfig) -> None:
    llm = FakeLLM(["prompt text"], image_failures=1)
    agent = ArtifactAgent(config=app_config.agents, llm_factory=lambda: llm)
    unit_id = _seed(db_path, "artifact", {"profile_ref": "p"})

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "complete"
    assert len(llm.chat_calls) == 1
    assert len(llm.image_calls) == 2
    assert json.loads(_unit(db_path, unit_id)["result_json"])["artifact"]["format"] == "composition"


def test_dry_run_artifact_skips_saved_substeps_on_retry(db_path: str) -> None:
    agent = DryRunArtifactAgent()
    unit_id = _seed(db_path, "artifact", {"profile_ref": "p", "simulate_failures": 2})

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "complete"
    assert outcome.attempt_count == 3
    assert agent.images_generated == 1
    assert agent.renders == 1

    store = SQLiteStore(db_path)
    try:
        counts = store.count_event_types_for_unit(unit_id=unit_id)
    finally:
        store.close()
    assert counts["attempt_failed"] == 2
    # Attempts 2 and 3 reused all three saved sub-steps.
    assert counts["substep_reused"] == 6


def test_dry_run_discovery_is_deterministic(db_path: str) -> None:
    first = _seed(db_path, "discovery", {"profile_ref": "https://profiles.example/x"})
    second = _seed(db_path, "discovery", {"profile_ref": "https://profiles.example/x"})
    _run(db_path, first, DryRunDiscoveryAgent())
    _run(db_path, second, DryRunDiscoveryAgent())
    r1 = json.loads(_unit(db_path, first)["result_json"])
    r2 = json.loads(_unit(db_path, second)["result_json"])
    assert r1["recommendation"] == r2["recommendation"]
    assert r1["dry_run"] is True


def test_dry_run_empty_result_fails_with_no_data(db_path: str) -> None:
    unit_id = _seed(db_path, "discovery", {"profile_ref": "p", "simulate_empty": True})
    outcome = _run(db_path, unit_id, DryRunDiscoveryAgent())
    assert outcome.status == "failed"
    assert _unit(db_path, unit_id)["last_error"] == "Failed after 3 attempts: Agent returned no data"


def test_build_runner_selects_by_kind_and_mode(app_config: AppConfig) -> None:
    assert isinstance(build_runner("artifact", app_config=app_config, dry_run=True), DryRunArtifactAgent)
    assert isinstance(build_runner("discovery", app_config=app_config, llm_factory=lambda: FakeLLM([])), DiscoveryAgent)
    with pytest.raises(ValueError):
        build_runner("postcard", app_config=app_config)


def test_missing_api_key_fails_the_attempt_not_construction(
    db_path: str, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    agent = build_runner("enrichment", app_config=app_config)
    unit_id = _seed(db_path, "enrichment", {"profile_ref": "p"}, max_attempts=1)

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "failed"
    assert "OPENAI_API_KEY" in _unit(db_path, unit_id)["last_error"]


def test_artifact_agent_reuses_saved_render(db_path: str, app_config: AppConfig) -> None:
    llm = FakeLLM([])
    renderer = FailingRenderer(failures=0)
    agent = ArtifactAgent(config=app_config.agents, llm_factory=lambda: llm, renderer=renderer)
    unit_id = _seed(db_path, "artifact", {"profile_ref": "p"})

    # A previous attempt finished every sub-step but never reached `complete`.
    saved = {"format": "png", "url": "https://cdn.example/saved.png", "background_url": "https://img.example/bg.png"}
    store = SQLiteStore(db_path)
    try:
        store.save_unit_state(unit_id, "background_prompt", "saved prompt")
        store.save_unit_state(unit_id, "background_image", {"url": "https://img.example/bg.png", "b64_json": None})
        store.save_unit_state(unit_id, "render", saved)
    finally:
        store.close()

    outcome = _run(db_path, unit_id, agent)
    assert outcome.status == "complete"
    assert llm.chat_calls == [] and llm.image_calls == []
    assert renderer.calls == 0
    assert json.loads(_unit(db_path, unit_id)["result_json"])["artifact"] == saved
