"""Evidence-judgment client: one async JSON-in/JSON-out call against Anthropic or OpenAI.

Every caller (category scoring, metric extraction, thesis fit, deal matching)
sends a system prompt plus a user prompt and expects a single JSON object back.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

import anthropic
import openai

from dealdesk.config import Settings, get_settings
from dealdesk.errors import ConfigurationMissing

log = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)

DEFAULT_MODELS = {"anthropic": "claude-haiku-4-5-20251001", "openai": "gpt-4o-mini"}


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def extract_json_text(text: str) -> str:
    """Body of a fenced ```json block, else the outermost ``{...}`` span, else *text*."""
    text = text.strip()
    m = _JSON_FENCE_RE.search(text)
    if m:
        return m.group(1)
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return text


def parse_judgment(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(extract_json_text(text))
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
    if not isinstance(parsed, dict):
        raise LLMCallError("LLM returned JSON that is not an object")
    return parsed


class LLMClient:
    """Judgment client bound to one provider and model."""

    def __init__(self, settings: Settings | None = None, temperature: float = 0.2):
        settings = settings or get_settings()
        self.provider = settings.llm_provider
        self.model = settings.llm_model or DEFAULT_MODELS.get(self.provider, "")
        self.max_tokens = settings.llm_max_tokens
        self.temperature = temperature
        if self.provider == "anthropic":
            if not settings.anthropic_api_key:
                raise ConfigurationMissing("No LLM API key configured", hint="Set ANTHROPIC_API_KEY", status_code=503)
            self._client: Any = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        elif self.provider == "openai":
            if not settings.openai_api_key and not settings.openai_base_url:
                raise ConfigurationMissing("No LLM API key configured", hint="Set OPENAI_API_KEY", status_code=503)
            self._client = openai.AsyncOpenAI(api_key=settings.openai_api_key or "unused",
                                              base_url=settings.openai_base_url or None)
        else:
            raise ConfigurationMissing(f"Unknown LLM provider: {self.provider!r}",
                                       hint="Set LLM_PROVIDER to anthropic or openai", status_code=503)

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model, max_tokens=self.max_tokens, temperature=self.temperature,
                system=system, messages=[{"role": "user", "content": user}],
            )
            return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        response = await self._client.chat.completions.create(
            model=self.model, max_tokens=self.max_tokens, temperature=self.temperature,
            response_format={"type": "json_object"},
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
        )
        return response.choices[0].message.content or ""

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """One judgment: the model's reply parsed as a JSON object."""
        try:
            text = await self._complete(system, user)
        except (anthropic.APIError, openai.APIError) as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        return parse_judgment(text)
