from __future__ import annotations
import logging
from typing import AsyncIterator, List, Optional

from .cancellation import CancellationToken
from .errors import ProviderInvalidResponseError, RelayError
from .ports import ModelProvider
from .result import Result
from .types import ChatCompletionRequest, ChatCompletionResponse, ChatMessage

logger = logging.getLogger(__name__)


class ChatSession:
    """
    One conversation against one provider/model, backed by a Transcript.
    Every turn sends the full transcript history.
    """

    def __init__(
        self,
        provider: ModelProvider,
        transcript,
        model: str,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self.provider = provider
        self.transcript = transcript
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.last_error: Optional[RelayError] = None

    def _outgoing_messages(self) -> List[ChatMessage]:
        return [ChatMessage(role=m.role, content=m.content) for m in self.transcript.messages]

    def build_request(self, *, stream: bool = False) -> ChatCompletionRequest:
        return ChatCompletionRequest(
            model=self.model,
            messages=self._outgoing_messages(),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=stream,
        )

    async def run_turn(
        self, user_text: str, token: Optional[CancellationToken] = None,
    ) -> Result[ChatCompletionResponse]:
        self.transcript.append_message("user", user_text)
        result = await self.provider.chat_completion(self.build_request(), token)
        if result.ok:
            self.transcript.append_message("assistant", result.value.message.content)
            self.last_error = None
        else:
            self.last_error = result.error
        return result

    async def run_turn_stream(
        self, user_text: str, token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Yields content pieces as they arrive. Whatever arrived is persisted;
        the record is 'partial' when the turn was cancelled or failed (see last_error).
        """
        self.transcript.append_message("user", user_text)
        self.last_error = None
        partial: List[str] = []
        interrupted = False
        chunks = self.provider.chat_completion_stream(self.build_request(stream=True), token)
        try:
            async for item in chunks:
                if not item.ok:
                    if isinstance(item.error, ProviderInvalidResponseError):
                        logger.warning("Skipping malformed stream fragment from %s", self.provider.name)
                        continue
                    self.last_error = item.error
                    interrupted = True
                    break
                piece = item.value.delta.content
                if piece:
                    partial.append(piece)
                    yield piece
        except GeneratorExit:
            interrupted = True
            raise
        finally:
            await chunks.aclose()
            if token is not None and token.is_cancelled:
                interrupted = True
            if partial:
                self.transcript.append_message(
                    "assistant", "".join(partial), status="partial" if interrupted else "complete",
                )
