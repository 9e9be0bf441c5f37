# src/relay/providers/openai_compat.py
"""
Wire helpers shared by every adapter that speaks the OpenAI-compatible
chat-completions schema (request body, response body, SSE chunk).
"""
from __future__ import annotations
import json
from typing import Any, Dict, List, Mapping, Optional

from relay.core.errors import ProviderInvalidResponseError
from relay.core.result import Err, Ok, Result
from relay.core.types import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    ChunkDelta,
    FinishReason,
    ToolCall,
    ToolCallDelta,
    Usage,
    utcnow,
)

STANDARD_FINISH_REASONS: Dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "content_filter": "content_filter",
}

_ROLES = ("system", "user", "assistant", "tool")


def map_finish_reason(raw: Optional[str], table: Mapping[str, FinishReason]) -> FinishReason:
    """Unknown or missing reasons collapse to 'stop'."""
    if raw is None:
        return "stop"
    return table.get(raw, "stop")


def _message_to_wire(msg: ChatMessage) -> Dict[str, Any]:
    out: Dict[str, Any] = {"role": msg.role, "content": msg.content}
    if msg.name is not None:
        out["name"] = msg.name
    if msg.tool_call_id is not None:
        out["tool_call_id"] = msg.tool_call_id
    return out


def build_chat_payload(request: ChatCompletionRequest, *, stream: Optional[bool] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": request.model,
        "messages": [_message_to_wire(m) for m in request.messages],
    }
    effective_stream = request.stream if stream is None else stream
    optional = {
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "stream": effective_stream,
        "tool_choice": request.tool_choice,
        "stop": request.stop,
    }
    payload.update({k: v for k, v in optional.items() if v is not None})
    if request.tools:
        payload["tools"] = [
            {
                "type": tool.type,
                "function": {
                    "name": tool.function.name,
                    "description": tool.function.description,
                    "parameters": tool.function.parameters,
                },
            }
            for tool in request.tools
        ]
    return payload


def _usage(raw: Any) -> Usage:
    if not isinstance(raw, dict):
        return Usage()
    return Usage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
        total_tokens=int(raw.get("total_tokens") or 0),
    )


def _role(raw: Any, default: Optional[str]) -> Optional[str]:
    return raw if raw in _ROLES else default


def _parse_tool_calls(raw_calls: List[Dict[str, Any]]) -> List[ToolCall]:
    """Raises ValueError/TypeError/KeyError on malformed entries; the caller maps that."""
    calls: List[ToolCall] = []
    for call in raw_calls:
        fn = call["function"]
        raw_args = fn.get("arguments") or "{}"
        args = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
        if not isinstance(args, dict):
            raise ValueError("tool call arguments must decode to an object")
        calls.append(ToolCall(id=str(call.get("id") or ""), name=str(fn["name"]), arguments=args))
    return calls


def parse_chat_response(
    provider: str,
    body: Any,
    finish_reasons: Mapping[str, FinishReason] = STANDARD_FINISH_REASONS,
) -> Result[ChatCompletionResponse]:
    try:
        choice = body["choices"][0]
        raw_msg = choice["message"]
        raw_calls = raw_msg.get("tool_calls")
        tool_calls = _parse_tool_calls(raw_calls) if raw_calls else None
        message = ChatMessage(
            role=_role(raw_msg.get("role"), "assistant"),
            content=raw_msg.get("content") or "",
            timestamp=utcnow(),
        )
        return Ok(ChatCompletionResponse(
            id=str(body.get("id") or ""),
            model=str(body.get("model") or ""),
            message=message,
            finish_reason=map_finish_reason(choice.get("finish_reason"), finish_reasons),
            usage=_usage(body.get("usage")),
            tool_calls=tool_calls,
        ))
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        return Err(ProviderInvalidResponseError(provider, body, cause=e))


def parse_stream_chunk(
    provider: str,
    body: Any,
    finish_reasons: Mapping[str, FinishReason] = STANDARD_FINISH_REASONS,
) -> Result[ChatCompletionChunk]:
    try:
        choices = body.get("choices") or []
        if not choices:
            # usage-only or keep-alive fragment
            return Ok(ChatCompletionChunk(
                id=str(body.get("id") or ""), model=str(body.get("model") or ""), delta=ChunkDelta(),
            ))
        choice = choices[0]
        raw_delta = choice.get("delta") or {}
        deltas = []
        for pos, call in enumerate(raw_delta.get("tool_calls") or []):
            fn = call.get("function") or {}
            deltas.append(ToolCallDelta(
                index=int(call.get("index", pos)),
                id=call.get("id"),
                name=fn.get("name"),
                arguments=fn.get("arguments"),
            ))
        raw_reason = choice.get("finish_reason")
        return Ok(ChatCompletionChunk(
            id=str(body.get("id") or ""),
            model=str(body.get("model") or ""),
            delta=ChunkDelta(
                role=_role(raw_delta.get("role"), None),
                content=raw_delta.get("content"),
                tool_calls=tuple(deltas),
            ),
            finish_reason=map_finish_reason(raw_reason, finish_reasons) if raw_reason else None,
        ))
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        return Err(ProviderInvalidResponseError(provider, body, cause=e))
