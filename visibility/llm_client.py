"""OpenAI-compatible chat client shared by every outbound LLM call.

One implementation serves OpenRouter, OpenAI and Perplexity; the differences
live in ``ProviderConfig``. The SDK's own retries are disabled so the policy in
``chat_completion`` is the only one in effect.
"""
from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI

from visibility.config import Settings, settings
from visibility.services import logger as log_service


class LLMError(Exception):
    """Base class for failures talking to the text-generation service."""


class LLMConfigurationError(LLMError):
    """Credentials or endpoint missing; raised before any request is sent."""


class LLMTransportError(LLMError):
    def __init__(self, message: str, *, status_code: int | None = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class LLMResponseError(LLMError):
    """The service answered but the payload was unusable."""


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    answer_model: str
    validation_model: str
    topic_model: str
    extra_headers: dict[str, str] = field(default_factory=dict)
    web_search_suffix: str = ""

    def web_search_model(self, model: str) -> str:
        """Model id to use when the call must be grounded in live web results."""
        if self.web_search_suffix and not model.endswith(self.web_search_suffix):
            return f"{model}{self.web_search_suffix}"
        return model

    @classmethod
    def openrouter(cls, source: Settings) -> "ProviderConfig":
        return cls(
            name="openrouter",
            base_url=source.openrouter_base_url.strip() or "https://openrouter.ai/api/v1",
            api_key=source.openrouter_api_key,
            answer_model=source.answer_model,
            validation_model=source.validation_model,
            topic_model=source.topic_model,
            extra_headers={"HTTP-Referer": source.app_url, "X-Title": source.app_title},
            web_search_suffix=source.web_search_suffix,
        )

    @classmethod
    def openai(cls, source: Settings) -> "ProviderConfig":
        return cls(
            name="openai",
            base_url=source.openai_base_url,
            api_key=source.openai_api_key,
            answer_model=source.answer_model,
            validation_model=source.validation_model,
            topic_model=source.topic_model,
        )

    @classmethod
    def perplexity(cls, source: Settings) -> "ProviderConfig":
        # Perplexity's sonar models search the web natively.
        return cls(
            name="perplexity",
            base_url=source.perplexity_base_url,
            api_key=source.perplexity_api_key,
            answer_model=source.answer_model,
            validation_model=source.validation_model,
            topic_model=source.topic_model,
        )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ProviderConfig":
        source = source or settings
        factories = {
            "openrouter": cls.openrouter,
            "openai": cls.openai,
            "perplexity": cls.perplexity,
        }
        name = (source.llm_provider or "openrouter").strip().lower()
        if name not in factories:
            raise LLMConfigurationError(f"Unknown LLM provider: {source.llm_provider}")
        return factories[name](source)


def get_client(provider: ProviderConfig) -> AsyncOpenAI:
    if not provider.api_key:
        raise LLMConfigurationError(f"API key for provider '{provider.name}' is not configured")
    if not provider.base_url:
        raise LLMConfigurationError(f"Base URL for provider '{provider.name}' is not configured")
    return AsyncOpenAI(
        api_key=provider.api_key,
        base_url=provider.base_url,
        timeout=settings.request_timeout_seconds,
        max_retries=0,
        default_headers=provider.extra_headers or None,
    )


_provider: ProviderConfig | None = None
_client: AsyncOpenAI | None = None


def provider() -> ProviderConfig:
    """Get or create the active provider configuration."""
    global _provider
    if _provider is None:
        _provider = ProviderConfig.from_settings()
    return _provider


def client() -> AsyncOpenAI:
    """Get or create the shared async client."""
    global _client
    if _client is None:
        _client = get_client(provider())
    return _client


_sleep = asyncio.sleep


def _retry_after_seconds(exc: openai.APIStatusError) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


async def chat_completion(
    *,
    system: str,
    user: str,
    model: str,
    caller: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    json_mode: bool = False,
    extra_body: dict[str, Any] | None = None,
    openai_client: AsyncOpenAI | None = None,
    max_attempts: int | None = None,
) -> str:
    """Send one chat completion and return the assistant text.

    Rate limits honour ``Retry-After`` when present and otherwise back off
    exponentially from ``rate_limit_base_delay``. Server errors, connection
    failures and timeouts back off exponentially from ``retry_base_delay``.
    Any other HTTP error is raised immediately.
    """
    api = openai_client or client()
    attempts_allowed = max(int(max_attempts or settings.http_max_retries), 1)

    kwargs: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
    }
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    if extra_body:
        kwargs["extra_body"] = extra_body

    started = time.monotonic()
    last_error: Exception | None = None
    last_status: int | None = None
    response: Any = None

    for attempt in range(1, attempts_allowed + 1):
        try:
            response = await api.chat.completions.create(**kwargs)
            break
        except openai.RateLimitError as exc:
            last_error, last_status = exc, exc.status_code
            delay = _retry_after_seconds(exc)
            if delay is None:
                delay = settings.rate_limit_base_delay * (2 ** (attempt - 1))
        except openai.APIStatusError as exc:
            last_error, last_status = exc, exc.status_code
            if exc.status_code < 500:
                log_service.log_llm_call(
                    model=model,
                    caller=caller,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    status="error",
                    attempts=attempt,
                    error=str(exc),
                )
                raise LLMTransportError(
                    f"{caller}: HTTP {exc.status_code} from provider",
                    status_code=exc.status_code,
                    attempts=attempt,
                ) from exc
            delay = settings.retry_base_delay * (2 ** (attempt - 1))
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass.
            last_error, last_status = exc, None
            delay = settings.retry_base_delay * (2 ** (attempt - 1))
        except openai.APIError as exc:
            # e.g. APIResponseValidationError: the provider answered but the body is unusable.
            log_service.log_llm_call(
                model=model,
                caller=caller,
                duration_ms=int((time.monotonic() - started) * 1000),
                status="error",
                attempts=attempt,
                error=str(exc),
            )
            raise LLMResponseError(f"{caller}: unexpected provider error: {exc}") from exc

        if attempt < attempts_allowed:
            logger.warning(
                f"{caller}: attempt {attempt}/{attempts_allowed} failed ({last_error}); "
                f"retrying in {delay:.1f}s"
            )
            await _sleep(delay)
    else:
        log_service.log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.monotonic() - started) * 1000),
            status="error",
            attempts=attempts_allowed,
            error=str(last_error),
        )
        raise LLMTransportError(
            f"{caller}: request failed after {attempts_allowed} attempts: {last_error}",
            status_code=last_status,
            attempts=attempts_allowed,
        ) from last_error

    choices = getattr(response, "choices", None) or []
    if not choices or getattr(choices[0], "message", None) is None:
        raise LLMResponseError(f"{caller}: response has no choices")
    content = getattr(choices[0].message, "content", None)
    if not content or not content.strip():
        raise LLMResponseError(f"{caller}: response content is empty")

    usage = getattr(response, "usage", None)
    log_service.log_llm_call(
        model=model,
        caller=caller,
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        duration_ms=int((time.monotonic() - started) * 1000),
        attempts=attempt,
    )
    return content


_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)


def _first_json_object(text: str) -> str | None:
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json(content: str | None, context: str) -> dict[str, Any]:
    """Pull the JSON object out of a model reply that may be fenced or padded with prose."""
    if not content or not content.strip():
        raise LLMResponseError(f"{context}: response content is empty")

    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    candidate = _first_json_object(text)
    if candidate is None:
        raise LLMResponseError(f"{context}: no JSON object found in response")

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"{context}: failed to parse JSON - {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise LLMResponseError(f"{context}: expected a JSON object")
    return parsed
