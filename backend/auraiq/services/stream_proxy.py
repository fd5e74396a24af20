"""
Streaming proxy between the model provider and the caller.

States move forward only:

    IDLE -> AWAITING_UPSTREAM_HEADERS -> STREAMING -> COMPLETED
                      |                      |-----> UPSTREAM_ERROR
                      |                      '-----> CLIENT_DISCONNECTED
                      '-> UPSTREAM_ERROR / CLIENT_DISCONNECTED

``open`` performs the upstream call so errors before the first byte can still
become a normal JSON error response. ``relay`` is the body iterator handed to
StreamingResponse. It reads one chunk, forwards it, then reads the next, and
always closes the upstream on exit.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import AsyncIterator, Optional, Sequence

from auraiq import config
from auraiq.errors import GatewayError, StreamFault
from auraiq.models.chat import HistoryMessage
from auraiq.services.token_budget import estimate_tokens, truncate_content
from auraiq.services.upstream import UpstreamStream

logger = logging.getLogger(__name__)

DONE_EVENT = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class ProxyState(str, Enum):
    IDLE = "idle"
    AWAITING_UPSTREAM_HEADERS = "awaiting_upstream_headers"
    STREAMING = "streaming"
    COMPLETED = "completed"
    UPSTREAM_ERROR = "upstream_error"
    CLIENT_DISCONNECTED = "client_disconnected"


TERMINAL_STATES = frozenset({
    ProxyState.COMPLETED,
    ProxyState.UPSTREAM_ERROR,
    ProxyState.CLIENT_DISCONNECTED,
})

_TRANSITIONS = {
    ProxyState.IDLE: {ProxyState.AWAITING_UPSTREAM_HEADERS},
    ProxyState.AWAITING_UPSTREAM_HEADERS: {
        ProxyState.STREAMING,
        ProxyState.UPSTREAM_ERROR,
        ProxyState.CLIENT_DISCONNECTED,
    },
    ProxyState.STREAMING: set(TERMINAL_STATES),
}


class InvalidTransition(RuntimeError):
    pass


def transition(current: ProxyState, target: ProxyState) -> ProxyState:
    """Return ``target`` if the move is allowed, else raise InvalidTransition."""
    if target not in _TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move from {current.value} to {target.value}")
    return target


def wrap_chunk(text: str) -> bytes:
    """One text fragment as a canonical chat-completion event."""
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


# ---------------------------------------------------------------------------
# Outbound payload
# ---------------------------------------------------------------------------

def history_to_messages(
    history: Sequence[HistoryMessage],
    window: int = config.HISTORY_WINDOW,
) -> list[dict]:
    """The last ``window`` turns as role/content pairs."""
    recent = list(history)[-window:] if window > 0 else []
    return [
        {"role": "user" if turn.sender == "user" else "assistant", "content": turn.text}
        for turn in recent
    ]


def build_user_content(text: str, image_urls: Sequence[str]) -> list[dict]:
    """
    Content parts for the final user message.

    The text is cut to REQUEST_TOKEN_BUDGET. With images but no text, the
    default image prompt stands in. Returns [] when there is nothing to send.
    """
    parts = []
    if text.strip():
        estimated = estimate_tokens(text)
        if estimated > config.REQUEST_TOKEN_BUDGET:
            logger.warning(
                f"Content too large ({estimated} tokens), truncating to {config.REQUEST_TOKEN_BUDGET} tokens"
            )
        parts.append({"type": "text", "text": truncate_content(text, config.REQUEST_TOKEN_BUDGET).content})
    elif image_urls:
        parts.append({"type": "text", "text": config.DEFAULT_IMAGE_PROMPT})

    parts.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
    return parts


def build_messages(
    user_content: list[dict],
    context: Optional[str] = None,
    history: Sequence[HistoryMessage] = (),
) -> list[dict]:
    return [
        {"role": "system", "content": context or config.DEFAULT_SYSTEM_PROMPT},
        *history_to_messages(history),
        {"role": "user", "content": user_content},
    ]


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------

class StreamProxy:
    """Relays one provider reply to one caller."""

    def __init__(self, provider, messages: list[dict], model: Optional[str] = None):
        self.provider = provider
        self.messages = messages
        self.model = model
        self.state = ProxyState.IDLE
        self.upstream: Optional[UpstreamStream] = None
        self.chunks_relayed = 0

    def _move(self, target: ProxyState) -> None:
        logger.debug(f"Stream proxy {self.state.value} -> {target.value}")
        self.state = transition(self.state, target)

    @property
    def model_name(self) -> str:
        if self.upstream is not None:
            return self.upstream.model
        return self.model or getattr(self.provider, "model", "")

    async def open(self) -> UpstreamStream:
        """
        Issue the upstream request and wait for its headers.

        Raises:
            UpstreamError / ConfigurationError: the provider could not be used;
            the proxy is left in UPSTREAM_ERROR.
        """
        self._move(ProxyState.AWAITING_UPSTREAM_HEADERS)
        try:
            self.upstream = await self.provider.open(self.messages, self.model)
        except asyncio.CancelledError:
            self._move(ProxyState.CLIENT_DISCONNECTED)
            raise
        except GatewayError:
            self._move(ProxyState.UPSTREAM_ERROR)
            raise
        self._move(ProxyState.STREAMING)
        return self.upstream

    async def relay(self) -> AsyncIterator[bytes]:
        """
        Yield the caller-facing body.

        Canonical upstreams are relayed byte for byte. Text upstreams have each
        chunk wrapped with ``wrap_chunk`` and end with exactly one DONE_EVENT.
        A read error ends the stream with StreamFault; a caller that goes away
        (GeneratorExit / cancellation) ends it quietly.
        """
        if self.state is not ProxyState.STREAMING:
            raise InvalidTransition(f"relay() requires an open stream, state is {self.state.value}")

        upstream = self.upstream
        try:
            async for chunk in upstream.chunks:
                if upstream.canonical:
                    data = chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")
                else:
                    text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
                    if not text:
                        continue
                    data = wrap_chunk(text)
                yield data
                self.chunks_relayed += 1

            if not upstream.canonical:
                yield DONE_EVENT
            self._move(ProxyState.COMPLETED)
        except (GeneratorExit, asyncio.CancelledError):
            logger.info(
                f"Client disconnected after {self.chunks_relayed} chunks from {upstream.provider}"
            )
            self._move(ProxyState.CLIENT_DISCONNECTED)
            raise
        except Exception as e:
            logger.error(f"Error while reading upstream stream from {upstream.provider}: {e!r}")
            self._move(ProxyState.UPSTREAM_ERROR)
            raise StreamFault(f"Upstream stream failed: {e}") from e
        finally:
            await asyncio.shield(upstream.aclose())
