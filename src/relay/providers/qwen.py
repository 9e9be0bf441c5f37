# src/relay/providers/qwen.py
from __future__ import annotations
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

import httpx

from relay.config_schema import ProviderConfig, SchemaError, format_schema_error
from relay.core.cancellation import CancellationToken
from relay.core.errors import ProviderConfigError
from relay.core.result import Err, Ok, Result
from relay.core.types import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ModelCapabilities,
    ModelInfo,
    ProviderHealth,
)
from relay.providers import common
from relay.providers.openai_compat import STANDARD_FINISH_REASONS
from relay.transport import RequestOptions, Transport

logger = logging.getLogger(__name__)

DEFAULT_MODELS = (
    "qwen3-coder-30b",
    "qwen2.5-coder-32b-instruct",
    "qwen2.5-72b-instruct",
)


def qwen_capabilities(model_id: str) -> ModelCapabilities:
    """Derived from the model id alone; the local server does not report limits."""
    if "coder" in model_id:
        return ModelCapabilities(supports_tools=True, supports_code_generation=True,
                                 max_tokens=16384, context_window=131072)
    if "72b" in model_id:
        return ModelCapabilities(supports_tools=True, supports_code_generation=True,
                                 max_tokens=32768, context_window=131072)
    return ModelCapabilities(supports_tools=True, supports_code_generation=True,
                             max_tokens=8192, context_window=32768)


class QwenProvider:
    """
    Local inference server speaking the OpenAI-compatible API.
    - no auth header
    - model listing falls back to DEFAULT_MODELS when the server can't list
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

    def _model(self, model_id: str) -> ModelInfo:
        return ModelInfo(
            id=model_id,
            name=model_id,
            description=f"Qwen local model: {model_id}",
            provider=self.name,
            capabilities=qwen_capabilities(model_id),
            is_local=True,
        )

    async def get_models(self) -> Result[List[ModelInfo]]:
        if not self.is_available:
            return common.not_available(self.name)

        result = await self._transport.request(RequestOptions("GET", common.MODELS_PATH))
        entries = common.model_entries(result.value.data) if result.ok else None
        if entries is None:
            reason = result.error.message if not result.ok else "unexpected listing shape"
            logger.warning("Model listing failed for %s (%s); using default models", self.name, reason)
            return Ok([self._model(m) for m in DEFAULT_MODELS])
        return Ok([self._model(str(m["id"])) for m in entries])

    async def chat_completion(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> Result[ChatCompletionResponse]:
        if not self.is_available:
            return common.not_available(self.name)
        return await common.send_chat(self.name, self._transport, request, STANDARD_FINISH_REASONS, token)

    async def chat_completion_stream(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Result[ChatCompletionChunk]]:
        if not self.is_available:
            yield common.not_available(self.name)
            return
        chunks = common.stream_chat(self.name, self._transport, request, STANDARD_FINISH_REASONS, token)
        try:
            async for item in chunks:
                yield item
        finally:
            await chunks.aclose()

    async def dispose(self) -> None:
        await self._transport.aclose()
        self._initialized = False


class QwenProviderFactory:
    name = "qwen"

    def __init__(self, *, client_factory: Optional[Callable[..., httpx.AsyncClient]] = None):
        self._client_factory = client_factory

    def validate_config(self, raw: Any) -> Result[ProviderConfig]:
        label = common.config_label(raw, self.name)
        try:
            cfg = raw if isinstance(raw, ProviderConfig) else ProviderConfig.model_validate(raw)
        except SchemaError as e:
            return Err(ProviderConfigError(label, format_schema_error(e), cause=e))

        if cfg.type != "local":
            return Err(ProviderConfigError(cfg.name, 'Qwen provider must be of type "local"'))
        if not cfg.auth.base_url:
            return Err(ProviderConfigError(cfg.name, "Qwen provider requires auth.base_url"))
        if not cfg.endpoint:
            cfg = cfg.model_copy(update={"endpoint": f"{cfg.auth.base_url}/v1"})
        return Ok(cfg)

    def create(self, config: Any) -> Result[QwenProvider]:
        checked = self.validate_config(config)
        if not checked.ok:
            return checked
        return Ok(QwenProvider(checked.value, client_factory=self._client_factory))

