"""Thin async LLM client used for optional talking-point generation.

The business analyzer works without it; a client is only built when
``LLM_PROVIDER`` is set and the provider SDK is installed
(``pip install 'sleuth[llm]'``).
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from sleuth.config import Settings, get_settings

log = logging.getLogger(__name__)

_DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    """Async JSON-in/JSON-out client for Anthropic and OpenAI-style APIs."""

    def __init__(
        self,
        provider: str,
        model: str = "",
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1024,
    ):
        if provider not in _DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {provider!r}")
        self.provider = provider
        self.model = model or _DEFAULT_MODELS[provider]
        self.max_tokens = max_tokens
        if provider == "anthropic":
            import anthropic
            self._client: Any = anthropic.AsyncAnthropic(
                api_key=api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        else:
            import openai
            kwargs: dict[str, Any] = {}
            key = api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(data, dict):
            raise LLMCallError(f"LLM returned {type(data).__name__}, expected an object")
        return data


def build_llm_client(settings: Settings | None = None) -> LLMClient | None:
    """Return a configured client, or None when no provider is configured or usable."""
    settings = settings or get_settings()
    if not settings.llm_provider:
        return None
    try:
        return LLMClient(settings.llm_provider, settings.llm_model)
    except (ImportError, ValueError) as exc:
        log.warning("LLM client disabled (%s): %s", settings.llm_provider, exc)
        return None
