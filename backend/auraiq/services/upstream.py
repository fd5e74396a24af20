"""
Downstream model providers.

A provider opens one streamed completion and hands back an ``UpstreamStream``:
an async iterator of chunks plus a close hook. Providers are either

- canonical: the body is already ``data: {...choices[0].delta.content...}``
  server-sent events, yielded as raw bytes to be relayed unchanged, or
- transformed: the body is plain text (or an SDK text stream), yielded as str
  and wrapped into canonical events by the stream proxy.

Failures before the first byte map to UpstreamError: 503 when the provider
could not be reached, 502 when it answered with a non-2xx status.
"""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import anthropic
import httpx

from auraiq import config
from auraiq.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "AI service temporarily unavailable"

Chunk = Union[bytes, str]


@dataclass
class UpstreamStream:
    """An open streamed reply. ``aclose`` is safe to call more than once."""
    provider: str
    model: str
    canonical: bool
    chunks: AsyncIterator[Chunk]
    _closer: Callable[[], Awaitable[None]] = field(repr=False)
    _closed: bool = field(default=False, repr=False)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._closer()


def _unavailable(provider: str, e: Exception) -> UpstreamError:
    logger.error(f"{provider} unreachable: {e!r}")
    return UpstreamError(UNAVAILABLE_MESSAGE, error_code="upstream_unavailable", status_code=503)


def _bad_status(provider: str, status_code: int, body: str) -> UpstreamError:
    logger.error(f"{provider} returned HTTP {status_code}: {body[:500]}")
    return UpstreamError(
        f"AI provider returned HTTP {status_code}",
        error_code="upstream_bad_status",
        status_code=502,
    )


# ---------------------------------------------------------------------------
# HTTP providers (httpx)
# ---------------------------------------------------------------------------

class HttpProvider:
    """Base for providers reached with a plain streamed POST."""

    name = "http"
    canonical = True

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model: str,
        extra_headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = config.UPSTREAM_TIMEOUT_SECONDS,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.extra_headers = extra_headers or {}
        self._transport = transport
        self._timeout = timeout

    def _check_configured(self) -> None:
        if not self.endpoint:
            raise ConfigurationError(f"No endpoint configured for provider {self.name}")
        if not self.api_key:
            raise ConfigurationError(f"No API key configured for provider {self.name}")

    def request_url(self, model: str) -> str:
        return self.endpoint

    def request_body(self, messages: list[dict], model: str) -> dict:
        raise NotImplementedError

    def iter_chunks(self, response: httpx.Response) -> AsyncIterator[Chunk]:
        return response.aiter_bytes()

    async def open(self, messages: list[dict], model: Optional[str] = None) -> UpstreamStream:
        self._check_configured()
        model = model or self.model

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            **self.extra_headers,
        }
        client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        request = client.build_request(
            "POST",
            self.request_url(model),
            headers=headers,
            json=self.request_body(messages, model),
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            raise _unavailable(self.name, e)

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
                await client.aclose()
            raise _bad_status(self.name, response.status_code, body)

        async def close() -> None:
            try:
                await response.aclose()
            finally:
                await client.aclose()

        logger.info(f"Streaming from {self.name} model {model}")
        return UpstreamStream(
            provider=self.name,
            model=model,
            canonical=self.canonical,
            chunks=self.iter_chunks(response),
            _closer=close,
        )


class OpenAICompatibleProvider(HttpProvider):
    """Chat-completions endpoints that already stream canonical events."""

    canonical = True

    def __init__(self, name: str, *args, include_sampling: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.name = name
        self.include_sampling = include_sampling

    def request_body(self, messages: list[dict], model: str) -> dict:
        body = {"model": model, "messages": messages, "stream": True}
        if self.include_sampling:
            body["max_tokens"] = config.UPSTREAM_MAX_TOKENS
            body["temperature"] = config.UPSTREAM_TEMPERATURE
        return body


def flatten_content(content) -> str:
    """Text of a message whose content is a string or a list of parts."""
    if isinstance(content, str):
        return content
    return "\n".join(
        part.get("text", "") for part in content or [] if part.get("type") == "text"
    )


def messages_to_prompt(messages: list[dict]) -> str:
    """'User: ...\\n\\nAssistant: ...' transcript for text-generation endpoints."""
    lines = []
    for message in messages:
        speaker = "User" if message["role"] == "user" else "Assistant"
        lines.append(f"{speaker}: {flatten_content(message['content'])}")
    return "\n\n".join(lines)


class HuggingFaceProvider(HttpProvider):
    """Hugging Face Inference API; replies with raw text, not events."""

    name = "huggingface"
    canonical = False

    def request_url(self, model: str) -> str:
        return f"{self.endpoint}{model}"

    def request_body(self, messages: list[dict], model: str) -> dict:
        return {
            "inputs": messages_to_prompt(messages),
            "parameters": {
                "max_new_tokens": config.UPSTREAM_MAX_TOKENS,
                "temperature": config.UPSTREAM_TEMPERATURE,
                "return_full_text": False,
            },
            "options": {"wait_for_model": True},
        }

    def iter_chunks(self, response: httpx.Response) -> AsyncIterator[Chunk]:
        return response.aiter_text()


# ---------------------------------------------------------------------------
# Anthropic (native SDK)
# ---------------------------------------------------------------------------

def _to_anthropic_block(part: dict) -> dict:
    if part.get("type") == "image_url":
        return {"type": "image", "source": {"type": "url", "url": part["image_url"]["url"]}}
    return {"type": "text", "text": part.get("text", "")}


def to_anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    """
    Split OpenAI-style messages into (system prompt, Anthropic messages).

    System messages are joined into the system prompt. Consecutive messages
    from the same role are merged into one message with several blocks.
    """
    system_parts = []
    converted: list[dict] = []

    for message in messages:
        role = message["role"]
        content = message["content"]

        if role == "system":
            system_parts.append(flatten_content(content))
            continue

        if isinstance(content, str):
            blocks = [{"type": "text", "text": content}]
        else:
            blocks = [_to_anthropic_block(part) for part in content]

        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    return "\n\n".join(p for p in system_parts if p), converted


class AnthropicProvider:
    """
    Claude through the anthropic SDK's streaming helper; yields text deltas.

    A client passed in is shared and left open. A client the provider builds
    itself belongs to one stream and is closed with it.
    """

    name = "anthropic"
    canonical = False

    def __init__(self, api_key: str, model: str, client: Optional[anthropic.AsyncAnthropic] = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    def _build_client(self) -> anthropic.AsyncAnthropic:
        if not self.api_key:
            raise ConfigurationError("No API key configured for provider anthropic")
        return anthropic.AsyncAnthropic(api_key=self.api_key, timeout=config.UPSTREAM_TIMEOUT_SECONDS)

    async def open(self, messages: list[dict], model: Optional[str] = None) -> UpstreamStream:
        owns_client = self._client is None
        client = self._build_client() if owns_client else self._client
        model = model or self.model
        system, converted = to_anthropic_messages(messages)

        kwargs = {
            "model": model,
            "max_tokens": config.UPSTREAM_MAX_TOKENS,
            "temperature": config.UPSTREAM_TEMPERATURE,
            "messages": converted,
        }
        if system:
            kwargs["system"] = system

        manager = client.messages.stream(**kwargs)
        try:
            stream = await manager.__aenter__()
        except anthropic.APIConnectionError as e:
            if owns_client:
                await client.close()
            raise _unavailable(self.name, e)
        except anthropic.APIStatusError as e:
            if owns_client:
                await client.close()
            raise _bad_status(self.name, e.status_code, str(e.message))

        async def close() -> None:
            try:
                await manager.__aexit__(None, None, None)
            finally:
                if owns_client:
                    await client.close()

        logger.info(f"Streaming from anthropic model {model}")
        return UpstreamStream(
            provider=self.name,
            model=model,
            canonical=False,
            chunks=stream.text_stream,
            _closer=close,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _openrouter() -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        "openrouter",
        config.OPENROUTER_ENDPOINT,
        config.OPENROUTER_API_KEY,
        config.GENERAL_MODEL,
        extra_headers={"HTTP-Referer": config.APP_REFERER, "X-Title": config.APP_TITLE},
        include_sampling=False,
    )


def _iq1_openai() -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        "openai", config.IQ1_OPENAI_ENDPOINT, config.IQ1_OPENAI_API_KEY, config.IQ1_MODEL_NAME
    )


def _iq1_custom() -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        "custom", config.IQ1_CUSTOM_ENDPOINT, config.IQ1_CUSTOM_API_KEY, config.IQ1_CUSTOM_MODEL
    )


def _iq1_huggingface() -> HuggingFaceProvider:
    return HuggingFaceProvider(config.IQ1_HF_ENDPOINT, config.IQ1_HF_API_KEY, config.IQ1_HF_MODEL)


def _iq1_anthropic() -> AnthropicProvider:
    return AnthropicProvider(config.IQ1_ANTHROPIC_API_KEY, config.IQ1_ANTHROPIC_MODEL)


CHAT_PROVIDERS = {
    "openrouter": _openrouter,
}

IQ1_PROVIDERS = {
    "openai": _iq1_openai,
    "custom": _iq1_custom,
    "huggingface": _iq1_huggingface,
    "anthropic": _iq1_anthropic,
}


def _lookup(registry: dict, name: str, setting: str):
    factory = registry.get(name)
    if factory is None:
        allowed = ", ".join(sorted(registry))
        raise ConfigurationError(f"Unknown {setting} {name!r}; expected one of: {allowed}")
    return factory()


def get_chat_provider():
    """FastAPI dependency: provider for POST /api/chat (CHAT_PROVIDER)."""
    return _lookup(CHAT_PROVIDERS, config.CHAT_PROVIDER, "CHAT_PROVIDER")


def get_iq1_provider():
    """FastAPI dependency: provider for POST /api/chat/iq1 (IQ1_PROVIDER)."""
    return _lookup(IQ1_PROVIDERS, config.IQ1_PROVIDER, "IQ1_PROVIDER")
