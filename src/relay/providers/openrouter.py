# src/relay/providers/openrouter.py
from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from relay.config_schema import ApiKeyAuth, ProviderConfig, SchemaError, format_schema_error
from relay.core.cancellation import CancellationToken
from relay.core.errors import ModelNotSupportedError, ProviderConfigError
from relay.core.result import Err, Ok, Result
from relay.core.types import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    FinishReason,
    ModelCapabilities,
    ModelInfo,
    ModelPricing,
    ProviderHealth,
)
from relay.providers import common
from relay.providers.openai_compat import STANDARD_FINISH_REASONS
from relay.transport import RequestOptions, Transport

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai"
DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1"
REFERER = "https://github.com/relay-cli/relay"
TITLE = "relay-cli"

FINISH_REASONS: Dict[str, FinishReason] = {**STANDARD_FINISH_REASONS, "function_call": "tool_calls"}

TOOL_MODELS = ("openai/gpt-4", "openai/gpt-3.5-turbo", "anthropic/claude-3", "anthropic/claude-3.5")
IMAGE_MODELS = ("openai/gpt-4o", "anthropic/claude-3", "google/gemini")
CODE_MARKERS = ("coder", "code", "deepseek", "qwen", "codestral")


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def openrouter_capabilities(model: Dict[str, Any]) -> ModelCapabilities:
    model_id = str(model["id"])
    top = model.get("top_provider") or {}
    limits = model.get("per_request_limits") or {}
    max_tokens = (
        _int_or_none(top.get("max_completion_tokens"))
        or _int_or_none(limits.get("completion_tokens"))
        or 4096
    )
    context_window = (
        _int_or_none(model.get("context_length"))
        or _int_or_none(top.get("context_length"))
        or 4096
    )
    lowered = model_id.lower()
    return ModelCapabilities(
        supports_streaming=True,
        supports_tools=any(p in model_id for p in TOOL_MODELS),
        supports_images=any(p in model_id for p in IMAGE_MODELS),
        supports_code_generation=any(p in lowered for p in CODE_MARKERS),
        max_tokens=max_tokens,
        context_window=context_window,
    )


def openrouter_pricing(model: Dict[str, Any]) -> Optional[ModelPricing]:
    """Per-token price strings scaled to per-1k; None when the listing has no usable pricing."""
    pricing = model.get("pricing")
    if not isinstance(pricing, dict):
        return None
    try:
        prompt = float(pricing["prompt"])
        completion = float(pricing["completion"])
    except (KeyError, TypeError, ValueError):
        return None
    return ModelPricing(input_token_price=prompt * 1000, output_token_price=completion * 1000, currency="USD")


class OpenRouterProvider:
    """
    Remote gateway in front of many hosted models.
    - bearer API key plus HTTP-Referer / X-Title attribution headers
    - listing failures are propagated, there is no fallback list
    - when config.models is non-empty only those ids are exposed
    """

    def __init__(self, config: ProviderConfig, *, client_factory: Optional[Callable[..., httpx.AsyncClient]] = None):
        self.config = config
        self.name = config.name
        self.type = config.type
        self._transport = Transport(config, client_factory=client_factory)
        self._initialized = False

    @property
    def is_available(self) -> bool:
        return self._initialized and self.config.enabled

    async def initialize(self) -> Result[None]:
        result = await common.initialize_with_probe(self.name, self._transport)
        if result.ok:
            self._initialized = True
        return result

    async def check_health(self) -> ProviderHealth:
        return await common.timed_health(self.name, self._transport)

    def _is_selected(self, model_id: str) -> bool:
        return not self.config.models or model_id in self.config.models

    def _model(self, raw: Dict[str, Any]) -> ModelInfo:
        model_id = str(raw["id"])
        return ModelInfo(
            id=model_id,
            name=str(raw.get("name") or model_id),
            description=str(raw.get("description") or f"OpenRouter model: {model_id}"),
            provider=self.name,
            capabilities=openrouter_capabilities(raw),
            pricing=openrouter_pricing(raw),
            is_local=False,
        )

    async def get_models(self) -> Result[List[ModelInfo]]:
        if not self.is_available:
            return common.not_available(self.name)

        result = await self._transport.request(RequestOptions("GET", common.MODELS_PATH))
        if not result.ok:
            return result
        entries = common.model_entries(result.value.data)
        if entries is None:
            return Err(common.invalid_listing(self.name, result.value.data))
        return Ok([self._model(m) for m in entries if self._is_selected(str(m["id"]))])

    async def chat_completion(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> Result[ChatCompletionResponse]:
        if not self.is_available:
            return common.not_available(self.name)
        if not self._is_selected(request.model):
            return Err(ModelNotSupportedError(self.name, request.model))
        return await common.send_chat(self.name, self._transport, request, FINISH_REASONS, token)

    async def chat_completion_stream(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Result[ChatCompletionChunk]]:
        if not self.is_available:
            yield common.not_available(self.name)
            return
        if not self._is_selected(request.model):
            yield Err(ModelNotSupportedError(self.name, request.model))
            return
        chunks = common.stream_chat(self.name, self._transport, request, FINISH_REASONS, token)
        try:
            async for item in chunks:
                yield item
        finally:
            await chunks.aclose()

    async def dispose(self) -> None:
        await self._transport.aclose()
        self._initialized = False


class OpenRouterProviderFactory:
    name = "openrouter"

    def __init__(self, *, client_factory: Optional[Callable[..., httpx.AsyncClient]] = None):
        self._client_factory = client_factory

    def validate_config(self, raw: Any) -> Result[ProviderConfig]:
        label = common.config_label(raw, self.name)
        try:
            cfg = raw if isinstance(raw, ProviderConfig) else ProviderConfig.model_validate(raw)
        except SchemaError as e:
            return Err(ProviderConfigError(label, format_schema_error(e), cause=e))

        if cfg.type != "remote":
            return Err(ProviderConfigError(cfg.name, 'OpenRouter provider must be of type "remote"'))
        if not isinstance(cfg.auth, ApiKeyAuth):
            return Err(ProviderConfigError(cfg.name, "OpenRouter provider requires api_key authentication"))
        if not cfg.auth.api_key:
            return Err(ProviderConfigError(cfg.name, "OpenRouter provider requires auth.api_key"))

        headers = dict(cfg.auth.headers)
        headers.setdefault("HTTP-Referer", REFERER)
        headers.setdefault("X-Title", TITLE)
        auth = cfg.auth.model_copy(update={
            "base_url": cfg.auth.base_url or DEFAULT_BASE_URL,
            "headers": headers,
        })
        return Ok(cfg.model_copy(update={"auth": auth, "endpoint": cfg.endpoint or DEFAULT_ENDPOINT}))

    def create(self, config: Any) -> Result[OpenRouterProvider]:
        checked = self.validate_config(config)
        if not checked.ok:
            return checked
        return Ok(OpenRouterProvider(checked.value, client_factory=self._client_factory))
