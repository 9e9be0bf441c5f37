from __future__ import annotations
import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter"]
ProviderType = Literal["local", "remote"]


class SelectionStrategy(str, Enum):
    FIRST_AVAILABLE = "first-available"
    FASTEST = "fastest"
    CHEAPEST = "cheapest"
    MOST_CAPABLE = "most-capable"
    RANDOM = "random"


# ----- models -----

@dataclass(frozen=True)
class ModelCapabilities:
    supports_streaming: bool = True
    supports_tools: bool = False
    supports_images: bool = False
    supports_code_generation: bool = False
    max_tokens: int = 4096          # max output tokens
    context_window: int = 4096


@dataclass(frozen=True)
class ModelPricing:
    input_token_price: float    # per 1k tokens
    output_token_price: float   # per 1k tokens
    currency: str = "USD"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    capabilities: ModelCapabilities
    description: str = ""
    pricing: Optional[ModelPricing] = None
    is_local: bool = False


# ----- chat -----

@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    timestamp: Optional[dt.datetime] = None


@dataclass(frozen=True)
class ToolFunction:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)  # JSON schema


@dataclass(frozen=True)
class ToolDefinition:
    function: ToolFunction
    type: Literal["function"] = "function"


@dataclass(frozen=True)
class ChatCompletionRequest:
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None  # "none" | "auto" | tool name | explicit object
    stream: Optional[bool] = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ChatCompletionResponse:
    id: str
    model: str
    message: ChatMessage
    finish_reason: FinishReason
    usage: Usage
    tool_calls: Optional[List[ToolCall]] = None


@dataclass(frozen=True)
class ToolCallDelta:
    """
    One fragment of a streamed tool call. `arguments` is the raw JSON text piece
    as sent by the backend; callers concatenate fragments sharing an index.
    """
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(frozen=True)
class ChunkDelta:
    role: Optional[Role] = None
    content: Optional[str] = None
    tool_calls: Tuple[ToolCallDelta, ...] = ()


@dataclass(frozen=True)
class ChatCompletionChunk:
    id: str
    model: str
    delta: ChunkDelta
    finish_reason: Optional[FinishReason] = None


# ----- health -----

@dataclass(frozen=True)
class ProviderHealth:
    is_healthy: bool
    last_checked: dt.datetime
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    provider: str = ""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)
