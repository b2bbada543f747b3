from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    raw: dict[str, Any]


@dataclass(frozen=True)
class ImageGenerationResult:
    url: str | None
    b64_json: str | None
    revised_prompt: str | None
    raw: dict[str, Any]


class OpenAICompatibleChatClient:
    """Minimal OpenAI-compatible client wrapper.

    We keep this small on purpose:
    - providers/models are swapped via OpenAI-compatible gateways
    - agents record the exact request/response in the unit trace themselves
    """

    @staticmethod
    def _env_bool(name: str, default: bool = False) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s
        # Some gateways reject response_format; only send it when enabled.
        self.json_mode = self._env_bool("OUTREACH_LLM_JSON_MODE", True)

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import OpenAI  # type: ignore
        except ImportError as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    def chat(
        self,
        *,
        system: str,
        user: str,
        temperature: float,
        json_object: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
            "temperature": float(temperature),
        }
        if json_object and self.json_mode:
            payload["response_format"] = {"type": "json_object"}
        if extra:
            payload.update(extra)
        resp = self._client.chat.completions.create(**payload)
        msg = resp.choices[0].message
        return ChatCompletionResult(content=(msg.content or "").strip(), raw=resp.model_dump())

    def generate_image(self, *, prompt: str, model: str, size: str) -> ImageGenerationResult:
        resp = self._client.images.generate(model=model, prompt=prompt, size=size, n=1)
        data = resp.data[0] if resp.data else None
        if data is None:
            return ImageGenerationResult(url=None, b64_json=None, revised_prompt=None, raw=resp.model_dump())
        return ImageGenerationResult(
            url=getattr(data, "url", None),
            b64_json=getattr(data, "b64_json", None),
            revised_prompt=getattr(data, "revised_prompt", None),
            raw=resp.model_dump(),
        )
