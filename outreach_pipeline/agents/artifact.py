from __future__ import annotations

import time
from typing import Any, Protocol

from outreach_pipeline.agents.llm_calls import LazyLLM, LLMFactory, chat_text
from outreach_pipeline.agents.types import AgentError, UnitContext
from outreach_pipeline.config.load_config import AgentsConfig
from outreach_pipeline.utils.template import render_template


STATE_PROMPT = "background_prompt"
STATE_IMAGE = "background_image"
STATE_RENDER = "render"

_SYSTEM = "You write concise prompts for an image generation model."


class ArtifactRenderer(Protocol):
    """Turns a background image plus recipient data into the final artifact."""

    def render(self, *, unit_input: dict[str, Any], background: dict[str, Any]) -> dict[str, Any]: ...


class CompositionRenderer:
    """Default renderer: returns the composition document a screenshot service consumes."""

    def render(self, *, unit_input: dict[str, Any], background: dict[str, Any]) -> dict[str, Any]:
        return {
            "format": "composition",
            "template": unit_input.get("template") or "default",
            "background_url": background.get("url"),
            "has_inline_background": bool(background.get("b64_json")),
            "headline": unit_input.get("headline") or f"Hello {unit_input.get('name') or 'there'}",
            "recipient": {
                "name": unit_input.get("name"),
                "title": unit_input.get("title"),
                "company": unit_input.get("company"),
            },
            "rendered_at": time.time(),
        }


class ArtifactAgent:
    """Produce a personalised postcard in three resumable sub-steps.

    Each completed sub-step is stored in the unit's resumable state; a retry
    skips it. The background image is the expensive step and is never
    regenerated once saved.
    """

    kind = "artifact"

    def __init__(
        self,
        *,
        config: AgentsConfig,
        llm_factory: LLMFactory,
        renderer: ArtifactRenderer | None = None,
    ) -> None:
        self._config = config
        self._llm = LazyLLM(llm_factory)
        self._renderer = renderer or CompositionRenderer()

    def run(self, unit_input: dict[str, Any], ctx: UnitContext) -> dict[str, Any]:
        if ctx.has_state(STATE_PROMPT):
            prompt = str(ctx.state[STATE_PROMPT])
            ctx.progress("substep_reused", {"substep": STATE_PROMPT})
        else:
            ctx.progress("substep_started", {"substep": STATE_PROMPT}, step="Writing background prompt")
            prompt = chat_text(
                ctx,
                self._llm.get(),
                agent=self.kind,
                system=_SYSTEM,
                user=render_template(
                    self._config.artifact_prompt_template,
                    {
                        "template": unit_input.get("template", "default"),
                        "name": unit_input.get("name", ""),
                        "title": unit_input.get("title", ""),
                        "company": unit_input.get("company", ""),
                    },
                ),
                temperature=self._config.temperature,
            )
            ctx.save_state(STATE_PROMPT, prompt)

        if ctx.has_state(STATE_IMAGE):
            background = dict(ctx.state[STATE_IMAGE])
            ctx.progress("substep_reused", {"substep": STATE_IMAGE})
        else:
            ctx.progress("substep_started", {"substep": STATE_IMAGE}, step="Generating background image")
            image = self._llm.get().generate_image(
                prompt=prompt, model=self._config.image_model, size=self._config.image_size
            )
            if not image.url and not image.b64_json:
                raise AgentError("Image generation returned no image.")
            background = {
                "url": image.url,
                "b64_json": image.b64_json,
                "revised_prompt": image.revised_prompt,
                "model": self._config.image_model,
                "size": self._config.image_size,
            }
            ctx.save_state(STATE_IMAGE, background)

        if ctx.has_state(STATE_RENDER):
            rendered = dict(ctx.state[STATE_RENDER])
            ctx.progress("substep_reused", {"substep": STATE_RENDER})
        else:
            ctx.progress("substep_started", {"substep": STATE_RENDER}, step="Rendering postcard")
            rendered = self._renderer.render(unit_input=unit_input, background=background)
            if not rendered:
                raise AgentError("Renderer returned no artifact.")
            ctx.save_state(STATE_RENDER, rendered)

        return {
            "background_prompt": prompt,
            "background": {k: v for k, v in background.items() if k != "b64_json"},
            "artifact": rendered,
        }
