from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

import anthropic
import openai

from rivalscout.config import ConfigError, Settings

log = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class CompletionProvider(Protocol):
    async def complete(
        self, system: str, user: str, *, json_mode: bool = True, temperature: float = 0.2,
    ) -> Any: ...


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI(-compatible) APIs."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
    ):
        self.provider = provider
        self.max_tokens = max_tokens
        if provider == "anthropic":
            self.model = model or DEFAULT_ANTHROPIC_MODEL
            self._client: Any = anthropic.AsyncAnthropic(api_key=api_key)
        elif provider == "openai":
            self.model = model or DEFAULT_OPENAI_MODEL
            kwargs: dict[str, Any] = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ConfigError(f"Unknown LLM provider: {provider!r}")

    async def complete(
        self, system: str, user: str, *, json_mode: bool = True, temperature: float = 0.2,
    ) -> Any:
        """Send system+user message to the LLM; parsed JSON when *json_mode*, else text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                if json_mode:
                    m = _FENCED_JSON.search(text)
                    if m:
                        text = m.group(1)
            else:
                kwargs: dict[str, Any] = {}
                if json_mode:
                    kwargs["response_format"] = {"type": "json_object"}
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    **kwargs,
                )
                text = response.choices[0].message.content or ("{}" if json_mode else "")
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        if not json_mode:
            return text
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc


def build_completion_provider(settings: Settings) -> CompletionProvider | None:
    """Provider selected by configuration, or ``None`` when AI is not configured."""
    if settings.ai_provider is None:
        return None
    if not settings.ai_enabled:
        raise ConfigError(f"AI provider {settings.ai_provider!r} selected but its API key is not set")
    if settings.ai_provider == "anthropic":
        return LLMClient("anthropic", settings.anthropic_api_key or "", model=settings.anthropic_model)
    return LLMClient(
        "openai", settings.openai_api_key or "",
        model=settings.openai_model, base_url=settings.openai_base_url,
    )
