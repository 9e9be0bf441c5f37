from __future__ import annotations
from typing import Any, AsyncIterator, List, Optional, Protocol

from .cancellation import CancellationToken
from .result import Result
from .types import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ModelInfo,
    ProviderHealth,
    ProviderType,
)


class ModelProvider(Protocol):
    """
    Interface the core uses to talk to any LLM backend.

    Every fallible call returns a Result; nothing raises across this seam.
    """

    name: str
    type: ProviderType

    @property
    def is_available(self) -> bool:
        """True once initialize() succeeded and until dispose()."""
        ...

    async def initialize(self) -> Result[None]:
        """Probe the backend. On failure the provider stays unavailable."""
        ...

    async def get_models(self) -> Result[List[ModelInfo]]:
        ...

    async def check_health(self) -> ProviderHealth:
        """Timed probe; reports failures inside the snapshot instead of raising."""
        ...

    async def chat_completion(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> Result[ChatCompletionResponse]:
        ...

    def chat_completion_stream(
        self,
        request: ChatCompletionRequest,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Result[ChatCompletionChunk]]:
        """
        Streaming call. Yields one Result per backend fragment, in order.
        Tool-call argument fragments are forwarded raw; the caller assembles them.
        """
        ...

    async def dispose(self) -> None:
        ...


class ProviderFactory(Protocol):
    """Named construction strategy held by the ProviderRegistry."""

    name: str

    def validate_config(self, raw: Any) -> Result[Any]:
        """Schema-check `raw` and apply backend rules; returns the ProviderConfig."""
        ...

    def create(self, config: Any) -> Result[ModelProvider]:
        ...
