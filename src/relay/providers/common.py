# src/relay/providers/common.py
"""
Transport-driving steps every OpenAI-compatible adapter performs the same way.
Adapters compose these instead of inheriting them.
"""
from __future__ import annotations
import logging
import time
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from relay.config_schema import ProviderConfig
from relay.core.cancellation import CancellationToken
from relay.core.errors import ProviderError, ProviderInvalidResponseError, ProviderUnavailableError
from relay.core.result import Err, Ok, Result
from relay.core.types import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    FinishReason,
    ProviderHealth,
    utcnow,
)
from relay.providers.openai_compat import build_chat_payload, parse_chat_response, parse_stream_chunk
from relay.transport import HttpResponse, RequestOptions, Transport

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0  # seconds; upper bound, a shorter configured timeout wins
MODELS_PATH = "/models"
CHAT_PATH = "/chat/completions"


def not_available(provider: str) -> Err:
    return Err(ProviderUnavailableError(provider, "Provider is not initialized or disabled"))


async def probe(transport: Transport) -> Result[HttpResponse]:
    timeout = min(PROBE_TIMEOUT, transport.timeout)
    return await transport.request(RequestOptions("GET", MODELS_PATH, timeout=timeout))


async def initialize_with_probe(provider: str, transport: Transport) -> Result[None]:
    result = await probe(transport)
    if not result.ok:
        err = result.error
        return Err(ProviderError(f"Failed to initialize provider {provider}: {err.message}",
                                 provider, err.code, cause=err))
    return Ok(None)


async def timed_health(provider: str, transport: Transport) -> ProviderHealth:
    started = time.perf_counter()
    try:
        result = await probe(transport)
    except Exception as e:
        # Transport reports failures as values; anything else is a bug in a lower layer.
        logger.exception("Health probe for %s raised", provider)
        return ProviderHealth(is_healthy=False, last_checked=utcnow(), error=str(e), provider=provider)
    if not result.ok:
        return ProviderHealth(is_healthy=False, last_checked=utcnow(), error=result.error.message, provider=provider)
    latency_ms = (time.perf_counter() - started) * 1000.0
    return ProviderHealth(is_healthy=True, last_checked=utcnow(), latency_ms=latency_ms, provider=provider)


def model_entries(body: Any) -> Optional[list]:
    """The `data` array of a /models listing, or None when the shape is wrong."""
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return [m for m in body["data"] if isinstance(m, dict) and m.get("id")]
    return None


def invalid_listing(provider: str, body: Any) -> ProviderInvalidResponseError:
    return ProviderInvalidResponseError(provider, body, {"reason": "model listing has no data array"})


async def send_chat(
    provider: str,
    transport: Transport,
    request: ChatCompletionRequest,
    finish_reasons: Mapping[str, FinishReason],
    token: Optional[CancellationToken] = None,
) -> Result[ChatCompletionResponse]:
    payload = build_chat_payload(request, stream=False if request.stream else None)
    result = await transport.request(RequestOptions("POST", CHAT_PATH, json=payload), token)
    if not result.ok:
        return result
    return parse_chat_response(provider, result.value.data, finish_reasons)


async def stream_chat(
    provider: str,
    transport: Transport,
    request: ChatCompletionRequest,
    finish_reasons: Mapping[str, FinishReason],
    token: Optional[CancellationToken] = None,
) -> AsyncIterator[Result[ChatCompletionChunk]]:
    payload: Dict[str, Any] = build_chat_payload(request, stream=True)
    stream = transport.stream_request(RequestOptions("POST", CHAT_PATH, json=payload), token)
    try:
        async for item in stream:
            if not item.ok:
                yield item
                continue
            yield parse_stream_chunk(provider, item.value, finish_reasons)
    finally:
        await stream.aclose()


def config_label(raw: Any, fallback: str) -> str:
    """Best-effort provider name for errors about a config that may not have parsed."""
    if isinstance(raw, ProviderConfig):
        return raw.name
    if isinstance(raw, dict) and isinstance(raw.get("name"), str) and raw["name"]:
        return raw["name"]
    return fallback
