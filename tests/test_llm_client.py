"""Tests for the shared chat-completion client."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import openai
import pytest

from visibility import llm_client
from visibility.config import Settings
from visibility.llm_client import (
    LLMConfigurationError,
    LLMResponseError,
    LLMTransportError,
    ProviderConfig,
    chat_completion,
    extract_json,
    get_client,
)
from fakes import chat_response, fake_openai_client

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _status_error(cls, status: int, headers: dict[str, str] | None = None):
    response = httpx.Response(status, request=_REQUEST, headers=headers or {})
    return cls(f"HTTP {status}", response=response, body=None)


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"a": 1}', "ctx") == {"a": 1}

    def test_fenced_block(self):
        content = 'Here you go:\n```json\n{"Answer": "x", "brands_mentioned": []}\n```\nThanks'
        assert extract_json(content, "ctx")["Answer"] == "x"

    def test_object_surrounded_by_prose(self):
        content = 'Sure! {"found": true, "note": "braces } in strings"} hope that helps {not json}'
        parsed = extract_json(content, "ctx")
        assert parsed == {"found": True, "note": "braces } in strings"}

    def test_empty_content_raises(self):
        with pytest.raises(LLMResponseError, match="ctx: response content is empty"):
            extract_json("   ", "ctx")

    def test_no_object_raises(self):
        with pytest.raises(LLMResponseError, match="no JSON object"):
            extract_json("I can help with that. Could you clarify?", "ctx")

    def test_invalid_json_raises_with_context(self):
        with pytest.raises(LLMResponseError, match="answer: failed to parse JSON"):
            extract_json("{'single': 'quotes'}", "answer")


class TestProviderConfig:
    def test_openrouter_appends_web_search_suffix_once(self):
        provider = ProviderConfig.from_settings(
            Settings(_env_file=None, llm_provider="openrouter", openrouter_api_key="k")
        )
        assert provider.web_search_model("openai/gpt-5-nano") == "openai/gpt-5-nano:online"
        assert provider.web_search_model("openai/gpt-5-nano:online") == "openai/gpt-5-nano:online"
        assert provider.extra_headers["X-Title"]

    def test_perplexity_uses_native_search(self):
        provider = ProviderConfig.from_settings(
            Settings(_env_file=None, llm_provider="perplexity", perplexity_api_key="k", answer_model="sonar")
        )
        assert provider.base_url == "https://api.perplexity.ai"
        assert provider.web_search_model("sonar") == "sonar"

    def test_unknown_provider_is_configuration_error(self):
        with pytest.raises(LLMConfigurationError):
            ProviderConfig.from_settings(Settings(_env_file=None, llm_provider="nope"))

    def test_missing_api_key_fails_before_any_request(self):
        provider = ProviderConfig.from_settings(Settings(_env_file=None, openrouter_api_key=""))
        with patch("visibility.llm_client.AsyncOpenAI") as mock_openai:
            with pytest.raises(LLMConfigurationError):
                get_client(provider)
        mock_openai.assert_not_called()

    def test_client_disables_sdk_retries(self):
        provider = ProviderConfig.from_settings(Settings(_env_file=None, openrouter_api_key="sk-or-key"))
        with patch("visibility.llm_client.AsyncOpenAI") as mock_openai:
            get_client(provider)
        kwargs = mock_openai.call_args.kwargs
        assert kwargs["api_key"] == "sk-or-key"
        assert kwargs["base_url"] == "https://openrouter.ai/api/v1"
        assert kwargs["max_retries"] == 0


@pytest.mark.asyncio
async def test_chat_completion_returns_content_and_sends_json_mode():
    create = AsyncMock(return_value=chat_response('{"ok": true}'))
    content = await chat_completion(
        system="sys",
        user="usr",
        model="m",
        caller="test",
        json_mode=True,
        temperature=0.1,
        openai_client=fake_openai_client(create),
    )
    assert content == '{"ok": true}'
    kwargs = create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["temperature"] == 0.1
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after_header():
    create = AsyncMock(
        side_effect=[
            _status_error(openai.RateLimitError, 429, {"retry-after": "7"}),
            chat_response("done"),
        ]
    )
    sleep = AsyncMock()
    with patch("visibility.llm_client._sleep", new=sleep):
        content = await chat_completion(
            system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create)
        )
    assert content == "done"
    sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_rate_limit_without_header_backs_off_exponentially():
    create = AsyncMock(
        side_effect=[
            _status_error(openai.RateLimitError, 429),
            _status_error(openai.RateLimitError, 429),
            chat_response("done"),
        ]
    )
    sleep = AsyncMock()
    with patch("visibility.llm_client._sleep", new=sleep):
        await chat_completion(system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create))
    assert [c.args[0] for c in sleep.await_args_list] == [5.0, 10.0]


@pytest.mark.asyncio
async def test_server_errors_exhaust_into_transport_error():
    create = AsyncMock(side_effect=[_status_error(openai.InternalServerError, 503) for _ in range(3)])
    sleep = AsyncMock()
    with patch("visibility.llm_client._sleep", new=sleep):
        with pytest.raises(LLMTransportError) as excinfo:
            await chat_completion(
                system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create)
            )
    assert excinfo.value.status_code == 503
    assert excinfo.value.attempts == 3
    assert create.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_connection_errors_are_retried():
    create = AsyncMock(
        side_effect=[
            openai.APITimeoutError(request=_REQUEST),
            openai.APIConnectionError(request=_REQUEST),
            chat_response("ok"),
        ]
    )
    with patch("visibility.llm_client._sleep", new=AsyncMock()):
        content = await chat_completion(
            system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create)
        )
    assert content == "ok"
    assert create.await_count == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    create = AsyncMock(side_effect=_status_error(openai.BadRequestError, 400))
    sleep = AsyncMock()
    with patch("visibility.llm_client._sleep", new=sleep):
        with pytest.raises(LLMTransportError) as excinfo:
            await chat_completion(
                system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create)
            )
    assert excinfo.value.status_code == 400
    assert create.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_provider_errors_become_response_errors():
    invalid = openai.APIResponseValidationError(response=httpx.Response(200, request=_REQUEST), body=None)
    create = AsyncMock(side_effect=invalid)
    sleep = AsyncMock()
    with patch("visibility.llm_client._sleep", new=sleep):
        with pytest.raises(LLMResponseError, match="unexpected provider error") as excinfo:
            await chat_completion(
                system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create)
            )
    assert excinfo.value.__cause__ is invalid
    assert create.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_empty_content_is_response_error_without_retry():
    create = AsyncMock(return_value=chat_response(""))
    with pytest.raises(LLMResponseError):
        await chat_completion(system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create))
    assert create.await_count == 1


@pytest.mark.asyncio
async def test_missing_choices_is_response_error():
    create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
    with pytest.raises(LLMResponseError, match="no choices"):
        await chat_completion(system="s", user="u", model="m", caller="test", openai_client=fake_openai_client(create))


@pytest.mark.asyncio
async def test_default_client_requires_configuration(monkeypatch):
    monkeypatch.setattr(llm_client, "_client", None)
    monkeypatch.setattr(
        llm_client,
        "_provider",
        ProviderConfig.from_settings(Settings(_env_file=None, openrouter_api_key="")),
    )
    with pytest.raises(LLMConfigurationError):
        await chat_completion(system="s", user="u", model="m", caller="test")
