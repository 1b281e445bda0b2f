"""Core data models for the exchange engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class ConversationMode(str, Enum):
    """Declared mode of a sub-conversation. Drives the tool policy gate."""
    PLAN = "plan"
    AGENT = "agent"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ToolState(str, Enum):
    CALLING = "calling"
    RESULT = "result"


class ResumeKind(str, Enum):
    """How the engine should address its own session history."""
    FRESH = "fresh"
    CONTINUE = "continue"
    ROLLBACK = "rollback"
    FORK = "fork"


class ConnectionMethod(str, Enum):
    SUBSCRIPTION = "claude-subscription"
    API_KEY = "api-key"
    CUSTOM_MODEL = "custom-model"
    OFFLINE_FALLBACK = "offline-fallback"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Message parts ──


@dataclass
class TextPart:
    text: str
    type: str = "text"


@dataclass
class ToolInvocationPart:
    """A single tool call inside an assistant message.

    Created in the ``calling`` state and mutated in place once the
    engine reports the tool's output.
    """
    call_id: str
    tool_name: str
    input: Any = None
    state: ToolState = ToolState.CALLING
    output: Any = None
    is_error: bool = False
    started_at: float = field(default_factory=time.time)
    type: str = "tool-invocation"


@dataclass
class ImagePart:
    base64_data: str
    media_type: str
    filename: str | None = None
    type: str = "image"


@dataclass
class AttachmentPart:
    path: str
    media_type: str = "application/octet-stream"
    filename: str | None = None
    type: str = "attachment"


MessagePart = Union[TextPart, ToolInvocationPart, ImagePart, AttachmentPart]


@dataclass
class Attachment:
    """User-supplied attachment for an outgoing prompt."""
    kind: str  # "image" or "file"
    media_type: str
    data: str | None = None  # base64 payload for images
    path: str | None = None  # filesystem path for files
    filename: str | None = None

    def to_part(self) -> MessagePart:
        if self.kind == "image":
            return ImagePart(
                base64_data=self.data or "",
                media_type=self.media_type,
                filename=self.filename,
            )
        return AttachmentPart(
            path=self.path or "",
            media_type=self.media_type,
            filename=self.filename,
        )


@dataclass
class Message:
    role: MessageRole
    parts: list[MessagePart] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_make_id)

    def first_text(self) -> str | None:
        for part in self.parts:
            if isinstance(part, TextPart):
                return part.text
        return None

    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    def attachment_parts(self) -> list[MessagePart]:
        return [
            p for p in self.parts
            if isinstance(p, (ImagePart, AttachmentPart))
        ]


@dataclass
class Thread:
    """Parent grouping of sub-conversations, bound to one workspace."""
    id: str = field(default_factory=_make_id)
    name: str | None = None
    workspace_path: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    archived_at: datetime | None = None


@dataclass
class SubConversation:
    """An independent dialogue branch with its own engine session."""
    thread_id: str
    id: str = field(default_factory=_make_id)
    name: str | None = None
    mode: ConversationMode = ConversationMode.AGENT
    messages: list[Message] = field(default_factory=list)
    session_id: str | None = None
    stream_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def last_assistant(self) -> Message | None:
        for msg in reversed(self.messages):
            if msg.role == MessageRole.ASSISTANT:
                return msg
        return None


@dataclass
class ResumeDirective:
    """Engine session addressing for one exchange."""
    kind: ResumeKind = ResumeKind.FRESH
    session_id: str | None = None
    at_uuid: str | None = None

    @classmethod
    def fresh(cls) -> ResumeDirective:
        return cls()

    @classmethod
    def continue_session(cls, session_id: str) -> ResumeDirective:
        return cls(kind=ResumeKind.CONTINUE, session_id=session_id)

    @classmethod
    def rollback(cls, session_id: str, at_uuid: str) -> ResumeDirective:
        return cls(kind=ResumeKind.ROLLBACK, session_id=session_id, at_uuid=at_uuid)

    @classmethod
    def fork(cls, session_id: str, at_uuid: str) -> ResumeDirective:
        return cls(kind=ResumeKind.FORK, session_id=session_id, at_uuid=at_uuid)


@dataclass
class CustomEngineConfig:
    """Explicit engine configuration supplied by the caller."""
    model: str
    token: str
    base_url: str | None = None


@dataclass
class ApprovalDecision:
    approved: bool
    message: str | None = None
    updated_input: Any = None


@dataclass
class PendingToolApproval:
    call_id: str
    sub_conversation_id: str
    future: asyncio.Future
    deadline: float


class CancellationToken:
    """Cooperative cancellation shared by every wait in one exchange."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Session cancelled.") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    @property
    def event(self) -> asyncio.Event:
        return self._event


@dataclass
class ActiveExecution:
    sub_conversation_id: str
    token: CancellationToken
    exchange_id: str = field(default_factory=_make_id)
