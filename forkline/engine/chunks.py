"""Chunk types streamed to UI consumers.

Each chunk is a small tagged dataclass. ``chunk_to_dict`` produces the
wire shape used by the SSE endpoint and the CLI.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union


@dataclass
class TextStart:
    id: str
    type: str = "text-start"


@dataclass
class TextDelta:
    id: str
    delta: str
    type: str = "text-delta"


@dataclass
class TextEnd:
    id: str
    type: str = "text-end"


@dataclass
class ToolInputStart:
    call_id: str
    tool_name: str
    type: str = "tool-input-start"


@dataclass
class ToolInputDelta:
    call_id: str
    input_text_delta: str
    type: str = "tool-input-delta"


@dataclass
class ToolInputAvailable:
    call_id: str
    tool_name: str
    input: Any = None
    type: str = "tool-input-available"


@dataclass
class ToolOutputAvailable:
    call_id: str
    output: Any = None
    type: str = "tool-output-available"


@dataclass
class ToolOutputError:
    call_id: str
    error_text: str
    type: str = "tool-output-error"


@dataclass
class MessageMetadataChunk:
    metadata: dict[str, Any] = field(default_factory=dict)
    type: str = "message-metadata"


@dataclass
class AskUserQuestion:
    call_id: str
    questions: list[dict[str, Any]] = field(default_factory=list)
    type: str = "ask-user-question"


@dataclass
class AskUserQuestionResult:
    call_id: str
    result: Any = None
    type: str = "ask-user-question-result"


@dataclass
class AskUserQuestionTimeout:
    call_id: str
    type: str = "ask-user-question-timeout"


@dataclass
class ErrorChunk:
    error_text: str
    category: str = "unknown"
    debug_context: dict[str, Any] = field(default_factory=dict)
    type: str = "error"


@dataclass
class AuthErrorChunk:
    error_text: str
    type: str = "auth-error"


@dataclass
class Finish:
    metadata: dict[str, Any] | None = None
    type: str = "finish"


Chunk = Union[
    TextStart,
    TextDelta,
    TextEnd,
    ToolInputStart,
    ToolInputDelta,
    ToolInputAvailable,
    ToolOutputAvailable,
    ToolOutputError,
    MessageMetadataChunk,
    AskUserQuestion,
    AskUserQuestionResult,
    AskUserQuestionTimeout,
    ErrorChunk,
    AuthErrorChunk,
    Finish,
]


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    """Serialize a chunk to a JSON-compatible dict."""
    data = asdict(chunk)
    if data.get("metadata") is None and isinstance(chunk, Finish):
        data.pop("metadata")
    return data
