"""Tests for the judgment client: provider setup, reply parsing, error mapping."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from dealdesk.config import Settings
from dealdesk.errors import ConfigurationMissing
from dealdesk.llm import LLMCallError, LLMClient, parse_judgment


def _settings(**overrides) -> Settings:
    values = {"llm_provider": "anthropic", "llm_model": "", "anthropic_api_key": "sk-test",
              "openai_api_key": "", "openai_base_url": ""}
    values.update(overrides)
    return Settings(**values)


class TestSetup:
    def test_default_models(self):
        assert LLMClient(_settings()).model == "claude-haiku-4-5-20251001"
        assert LLMClient(_settings(llm_provider="openai", openai_api_key="sk-o")).model == "gpt-4o-mini"
        assert LLMClient(_settings(llm_model="claude-sonnet-4-5")).model == "claude-sonnet-4-5"

    @pytest.mark.parametrize("overrides", [
        {"anthropic_api_key": ""},
        {"llm_provider": "openai"},
        {"llm_provider": "gemini"},
    ])
    def test_missing_configuration(self, overrides):
        with pytest.raises(ConfigurationMissing) as info:
            LLMClient(_settings(**overrides))
        assert info.value.status_code == 503

    def test_openai_compatible_server_needs_no_key(self):
        client = LLMClient(_settings(llm_provider="openai", openai_base_url="http://localhost:11434/v1"))
        assert client.provider == "openai"


@pytest.mark.parametrize("text,expected", [
    ('{"score": 70}', {"score": 70}),
    ('Here you go:\n```json\n{"score": 55}\n```', {"score": 55}),
    ('Judgment: {"fit": "mixed"} done', {"fit": "mixed"}),
])
def test_parse_judgment(text, expected):
    assert parse_judgment(text) == expected


@pytest.mark.parametrize("text", ["not json", "[1, 2]"])
def test_parse_judgment_rejects(text):
    with pytest.raises(LLMCallError) as info:
        parse_judgment(text)
    assert not info.value.retryable


class TestCall:
    @pytest.mark.asyncio
    async def test_anthropic_text_blocks_are_joined(self):
        client = LLMClient(_settings())
        reply = SimpleNamespace(content=[SimpleNamespace(type="text", text='{"score": '),
                                         SimpleNamespace(type="text", text="81}")])
        client._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=reply)))
        assert await client.call("system", "user") == {"score": 81}
        kwargs = client._client.messages.create.await_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_openai_reply(self):
        client = LLMClient(_settings(llm_provider="openai", openai_api_key="sk-o"), temperature=0)
        reply = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content='{"fit": "on_thesis"}'))])
        create = AsyncMock(return_value=reply)
        client._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        assert await client.call("system", "user") == {"fit": "on_thesis"}
        assert create.await_args.kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_api_errors_are_retryable(self):
        client = LLMClient(_settings())
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        client._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(side_effect=error)))
        with pytest.raises(LLMCallError) as info:
            await client.call("system", "user")
        assert info.value.retryable
