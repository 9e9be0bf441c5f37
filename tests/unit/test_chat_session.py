# tests/unit/test_chat_session.py

from __future__ import annotations
import sys
from pathlib import Path

import pytest

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from relay.core.cancellation import CancellationToken
from relay.core.chat_session import ChatSession
from relay.core.errors import NetworkError, ProviderInvalidResponseError
from relay.core.result import Err, Ok
from relay.core.types import (
    ChatCompletionChunk,
    ChatCompletionResponse,
    ChatMessage,
    ChunkDelta,
    Usage,
)
from relay.storage.transcript import Transcript


def chunk(text):
    return Ok(ChatCompletionChunk(id="c", model="fake", delta=ChunkDelta(content=text)))


class FakeProvider:
    name = "fake"

    def __init__(self, text="hello", items=None, error=None):
        self.text = text
        self.items = items
        self.error = error
        self.requests = []
        self.stream_closed = False

    async def chat_completion(self, request, token=None):
        self.requests.append(request)
        if self.error:
            return Err(self.error)
        return Ok(ChatCompletionResponse(
            id="r1", model=request.model,
            message=ChatMessage(role="assistant", content=self.text),
            finish_reason="stop", usage=Usage(),
        ))

    async def chat_completion_stream(self, request, token=None):
        self.requests.append(request)
        items = self.items
        if items is None:
            # yield in two chunks to simulate streaming
            mid = len(self.text) // 2
            items = [chunk(self.text[:mid]), chunk(self.text[mid:])]
        try:
            for item in items:
                if token is not None and token.is_cancelled:
                    return
                yield item
        finally:
            self.stream_closed = True


def roles(t):
    return [(m.role, m.content) for m in t.messages]


@pytest.mark.asyncio
async def test_run_turn_non_stream():
    t = Transcript(system_prompt="sys", root_dir=None)
    provider = FakeProvider("pong")
    cs = ChatSession(provider, t, "fake-model", temperature=0.2)

    result = await cs.run_turn("ping")
    assert result.ok and result.value.message.content == "pong"

    # provider-ready history: system, user, assistant
    assert roles(t) == [("system", "sys"), ("user", "ping"), ("assistant", "pong")]
    sent = provider.requests[0]
    assert sent.model == "fake-model" and sent.temperature == 0.2 and not sent.stream
    assert [m.role for m in sent.messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_run_turn_failure_keeps_user_message_only():
    t = Transcript(system_prompt="sys", root_dir=None)
    cs = ChatSession(FakeProvider(error=NetworkError("down")), t, "m")
    result = await cs.run_turn("ping")
    assert not result.ok
    assert cs.last_error is result.error
    assert roles(t)[-1] == ("user", "ping")


@pytest.mark.asyncio
async def test_run_turn_stream_persists_final():
    t = Transcript(system_prompt="sys", root_dir=None)
    provider = FakeProvider("stream")
    cs = ChatSession(provider, t, "m")

    pieces = [p async for p in cs.run_turn_stream("go")]
    assert "".join(pieces) == "stream"

    # assistant final message persisted
    assert roles(t)[-1] == ("assistant", "stream")
    assert t.records[-1]["status"] == "complete"
    assert provider.requests[0].stream is True
    assert provider.stream_closed


@pytest.mark.asyncio
async def test_run_turn_stream_partial_on_close():
    t = Transcript(system_prompt="sys", root_dir=None)
    provider = FakeProvider("partial")
    cs = ChatSession(provider, t, "m")

    gen = cs.run_turn_stream("go")
    first = await gen.__anext__()
    assert first == "par"
    # closing early persists what arrived, marked partial
    await gen.aclose()

    assert roles(t)[-1] == ("assistant", "par")
    assert t.records[-1]["status"] == "partial"
    assert provider.stream_closed


@pytest.mark.asyncio
async def test_run_turn_stream_cancelled_by_token():
    t = Transcript(system_prompt="sys", root_dir=None)
    provider = FakeProvider(items=[chunk("a"), chunk("b"), chunk("c")])
    cs = ChatSession(provider, t, "m")
    token = CancellationToken()

    pieces = []
    async for piece in cs.run_turn_stream("go", token):
        pieces.append(piece)
        token.cancel()

    assert pieces == ["a"]
    assert roles(t)[-1] == ("assistant", "a")
    assert t.records[-1]["status"] == "partial"


@pytest.mark.asyncio
async def test_stream_error_stops_and_marks_partial():
    t = Transcript(system_prompt="sys", root_dir=None)
    items = [chunk("a"), Err(ProviderInvalidResponseError("fake", "{bad")), chunk("b"),
             Err(NetworkError("reset")), chunk("never")]
    cs = ChatSession(FakeProvider(items=items), t, "m")

    pieces = [p async for p in cs.run_turn_stream("go")]
    # malformed fragments are skipped, transport failures end the turn
    assert pieces == ["a", "b"]
    assert isinstance(cs.last_error, NetworkError)
    assert roles(t)[-1] == ("assistant", "ab")
    assert t.records[-1]["status"] == "partial"


@pytest.mark.asyncio
async def test_stream_with_no_content_persists_nothing():
    t = Transcript(system_prompt="sys", root_dir=None)
    cs = ChatSession(FakeProvider(items=[Err(NetworkError("refused"))]), t, "m")
    pieces = [p async for p in cs.run_turn_stream("go")]
    assert pieces == []
    assert roles(t)[-1] == ("user", "go")
