"""Turn raw engine events into UI chunks and accumulate assistant messages.

``StreamTransformer`` is a stateful, per-attempt mapper from the engine's
event dicts (``stream_event``, ``assistant``, ``user``, ``system``,
``result``) to chunk dataclasses. ``MessageBuilder`` folds the same chunks
into the parts of the assistant message that gets persisted.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Iterator

from forkline.engine.chunks import (
    AskUserQuestionResult,
    Chunk,
    Finish,
    MessageMetadataChunk,
    TextDelta,
    TextEnd,
    TextStart,
    ToolInputAvailable,
    ToolInputDelta,
    ToolInputStart,
    ToolOutputAvailable,
    ToolOutputError,
)
from forkline.engine.models import MessagePart, TextPart, ToolInvocationPart, ToolState

logger = logging.getLogger(__name__)

THINKING_TOOL = "Thinking"
COMPACT_TOOL = "Compact"
_THINKING_STREAMED = "thinking-streamed"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _gen_text_id() -> str:
    return f"text-{_now_ms()}-{uuid.uuid4().hex[:5]}"


def tool_result_text(content: Any) -> str:
    """Flatten a tool_result ``content`` field to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                pieces.append(str(item["text"]))
            else:
                pieces.append(str(item))
        return "\n".join(pieces)
    return str(content)


def _model_usage_entry(usage: dict[str, Any]) -> dict[str, Any]:
    def pick(*keys: str) -> Any:
        for key in keys:
            if usage.get(key) is not None:
                return usage[key]
        return 0

    return {
        "input_tokens": pick("input_tokens", "inputTokens"),
        "output_tokens": pick("output_tokens", "outputTokens"),
        "cache_read_input_tokens": pick("cache_read_input_tokens", "cacheReadInputTokens"),
        "cache_creation_input_tokens": pick(
            "cache_creation_input_tokens", "cacheCreationInputTokens"
        ),
        "cost_usd": pick("cost_usd", "costUSD"),
    }


class StreamTransformer:
    """Stateful mapper from engine events to chunks for one attempt."""

    def __init__(self, id_factory: Callable[[], str] = _gen_text_id) -> None:
        self._gen_id = id_factory
        self._start_time: float | None = None

        self._text_id: str | None = None
        self._text_started = False
        self._last_text_id: str | None = None
        self._streamed_text = False

        self._tool_call_id: str | None = None
        self._tool_name: str | None = None
        self._tool_input_json = ""
        self._emitted_tool_ids: set[str] = set()
        self._tool_id_map: dict[str, str] = {}
        self._parent_tool_use_id: str | None = None

        self._thinking_id: str | None = None
        self._thinking_text = ""
        self._in_thinking = False
        self._thinking_json_started = False
        self._thinking_counter = 0

        self._last_compact_id: str | None = None
        self._compact_counter = 0

    def composite_id(self, original_id: str) -> str:
        if self._parent_tool_use_id:
            return f"{self._parent_tool_use_id}:{original_id}"
        return original_id

    def resolve_tool_id(self, original_id: str) -> str:
        return self._tool_id_map.get(original_id, original_id)

    def transform(self, event: dict[str, Any]) -> Iterator[Chunk]:
        """Yield the chunks for one engine event."""
        if "parent_tool_use_id" in event:
            self._parent_tool_use_id = event.get("parent_tool_use_id")
        if self._start_time is None:
            self._start_time = time.monotonic()

        kind = event.get("type")
        if kind == "stream_event":
            yield from self._stream_event(event.get("event") or {})
        elif kind == "assistant":
            yield from self._assistant(event.get("message") or {})
        elif kind == "user":
            yield from self._user(event)
        elif kind == "system":
            yield from self._system(event)
        elif kind == "result":
            yield from self._result(event)

    # ── helpers ──

    def _end_text_block(self) -> Iterator[Chunk]:
        if self._text_started and self._text_id:
            yield TextEnd(id=self._text_id)
            self._last_text_id = self._text_id
            self._text_started = False
            self._text_id = None

    def _start_text_block(self) -> Iterator[Chunk]:
        self._text_id = self._gen_id()
        self._text_started = True
        yield TextStart(id=self._text_id)

    def _end_tool_input(self) -> Iterator[Chunk]:
        if not self._tool_call_id:
            return
        call_id = self._tool_call_id
        self._emitted_tool_ids.add(call_id)
        parsed: Any = {}
        if self._tool_input_json:
            try:
                parsed = json.loads(self._tool_input_json)
            except json.JSONDecodeError as exc:
                # Interrupted streams leave truncated JSON behind.
                logger.warning(
                    "Failed to parse tool input for %s: %s partial=%r",
                    call_id[:12], exc, self._tool_input_json[:120],
                )
                parsed = {"_raw": self._tool_input_json, "_parse_error": True}
        yield ToolInputAvailable(
            call_id=call_id,
            tool_name=self._tool_name or "unknown",
            input=parsed,
        )
        self._tool_call_id = None
        self._tool_name = None
        self._tool_input_json = ""

    # ── streaming events ──

    def _stream_event(self, event: dict[str, Any]) -> Iterator[Chunk]:
        etype = event.get("type")
        block = event.get("content_block") or {}
        delta = event.get("delta") or {}

        if etype == "message_start":
            self._streamed_text = False
            self._thinking_id = None
            self._thinking_text = ""
            self._in_thinking = False

        if etype == "content_block_start" and block.get("type") == "text":
            yield from self._end_text_block()
            yield from self._end_tool_input()
            yield from self._start_text_block()

        if etype == "content_block_delta" and delta.get("type") == "text_delta":
            if not self._text_started:
                yield from self._end_tool_input()
                yield from self._start_text_block()
            self._streamed_text = True
            yield TextDelta(id=self._text_id or "", delta=delta.get("text") or "")

        if etype == "content_block_stop":
            if self._text_started:
                yield from self._end_text_block()
            if self._tool_call_id:
                yield from self._end_tool_input()

        if etype == "content_block_start" and block.get("type") == "tool_use":
            yield from self._end_text_block()
            yield from self._end_tool_input()
            original_id = block.get("id") or self._gen_id()
            self._tool_call_id = self.composite_id(original_id)
            self._tool_name = block.get("name") or "unknown"
            self._tool_input_json = ""
            self._tool_id_map[original_id] = self._tool_call_id
            yield ToolInputStart(call_id=self._tool_call_id, tool_name=self._tool_name)

        if delta.get("type") == "input_json_delta" and self._tool_call_id:
            partial = delta.get("partial_json") or ""
            self._tool_input_json += partial
            yield ToolInputDelta(call_id=self._tool_call_id, input_text_delta=partial)

        if etype == "content_block_start" and block.get("type") == "thinking":
            self._thinking_counter += 1
            self._thinking_id = f"thinking-{_now_ms()}-{self._thinking_counter}"
            self._thinking_text = ""
            self._in_thinking = True
            self._thinking_json_started = False
            yield ToolInputStart(call_id=self._thinking_id, tool_name=THINKING_TOOL)

        if (
            delta.get("type") == "thinking_delta"
            and self._thinking_id
            and self._in_thinking
        ):
            text = str(delta.get("thinking") or "")
            self._thinking_text += text
            # Deltas form one JSON document {"text": "..."} across the stream.
            escaped = json.dumps(text)[1:-1]
            prefix = "" if self._thinking_json_started else '{"text":"'
            self._thinking_json_started = True
            yield ToolInputDelta(
                call_id=self._thinking_id, input_text_delta=prefix + escaped,
            )

        if etype == "content_block_stop" and self._in_thinking and self._thinking_id:
            yield ToolInputAvailable(
                call_id=self._thinking_id,
                tool_name=THINKING_TOOL,
                input={"text": self._thinking_text},
            )
            yield ToolOutputAvailable(
                call_id=self._thinking_id, output={"completed": True},
            )
            self._emitted_tool_ids.add(self._thinking_id)
            self._emitted_tool_ids.add(_THINKING_STREAMED)
            self._thinking_id = None
            self._thinking_text = ""
            self._in_thinking = False

    # ── complete messages ──

    def _assistant(self, message: dict[str, Any]) -> Iterator[Chunk]:
        for block in message.get("content") or []:
            btype = block.get("type")
            if btype == "thinking" and block.get("thinking"):
                # Already surfaced through thinking_delta events.
                if _THINKING_STREAMED in self._emitted_tool_ids or self._in_thinking:
                    continue
                thinking_id = self._gen_id()
                yield ToolInputAvailable(
                    call_id=thinking_id,
                    tool_name=THINKING_TOOL,
                    input={"text": block["thinking"]},
                )
                yield ToolOutputAvailable(call_id=thinking_id, output={"completed": True})

            elif btype == "text":
                yield from self._end_tool_input()
                # Streamed text arrives again in the complete message.
                if not self._text_started and not self._streamed_text:
                    text_id = self._gen_id()
                    yield TextStart(id=text_id)
                    yield TextDelta(id=text_id, delta=block.get("text") or "")
                    yield TextEnd(id=text_id)
                    self._last_text_id = text_id

            elif btype == "tool_use":
                yield from self._end_text_block()
                yield from self._end_tool_input()
                original_id = block.get("id") or self._gen_id()
                if original_id in self._emitted_tool_ids:
                    continue
                composite = self.composite_id(original_id)
                if composite in self._emitted_tool_ids:
                    continue
                self._emitted_tool_ids.add(original_id)
                self._emitted_tool_ids.add(composite)
                self._tool_id_map[original_id] = composite
                yield ToolInputAvailable(
                    call_id=composite,
                    tool_name=block.get("name") or "unknown",
                    input=block.get("input"),
                )

    def _user(self, event: dict[str, Any]) -> Iterator[Chunk]:
        content = (event.get("message") or {}).get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            call_id = self.resolve_tool_id(block.get("tool_use_id") or "")
            raw = block.get("content")
            if block.get("is_error"):
                yield ToolOutputError(call_id=call_id, error_text=tool_result_text(raw))
                continue
            output = event.get("tool_use_result")
            if not output and isinstance(raw, str):
                try:
                    parsed = json.loads(raw)
                except (json.JSONDecodeError, ValueError):
                    parsed = None
                if isinstance(parsed, (dict, list)):
                    output = parsed
            yield ToolOutputAvailable(call_id=call_id, output=output or raw)

    def _system(self, event: dict[str, Any]) -> Iterator[Chunk]:
        subtype = event.get("subtype")
        if subtype == "init":
            logger.debug(
                "Engine session init: model=%s tools=%d",
                event.get("model"), len(event.get("tools") or []),
            )
        elif subtype == "status" and event.get("status") == "compacting":
            self._last_compact_id = self._next_compact_id()
            yield ToolInputAvailable(
                call_id=self._last_compact_id,
                tool_name=COMPACT_TOOL,
                input={"status": "compacting"},
            )
        elif subtype == "compact_boundary":
            compact_id = self._last_compact_id
            if not compact_id:
                compact_id = self._next_compact_id()
                yield ToolInputAvailable(
                    call_id=compact_id,
                    tool_name=COMPACT_TOOL,
                    input={"status": "compacting"},
                )
            yield ToolOutputAvailable(call_id=compact_id, output={"status": "compacted"})
            self._last_compact_id = None

    def _next_compact_id(self) -> str:
        compact_id = f"compact-{_now_ms()}-{self._compact_counter}"
        self._compact_counter += 1
        return compact_id

    def _result(self, event: dict[str, Any]) -> Iterator[Chunk]:
        yield from self._end_text_block()
        yield from self._end_tool_input()

        usage = event.get("usage") or {}
        raw_model_usage = event.get("model_usage") or event.get("modelUsage")
        model_usage = None
        fallback_in = fallback_out = None
        if isinstance(raw_model_usage, dict) and raw_model_usage:
            model_usage = {
                model: _model_usage_entry(u or {})
                for model, u in raw_model_usage.items()
            }
            fallback_in = sum(u["input_tokens"] or 0 for u in model_usage.values())
            fallback_out = sum(u["output_tokens"] or 0 for u in model_usage.values())

        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        if input_tokens is None or (input_tokens == 0 and (fallback_in or 0) > 0):
            input_tokens = fallback_in
        if output_tokens is None or (output_tokens == 0 and (fallback_out or 0) > 0):
            output_tokens = fallback_out

        duration_ms = event.get("duration_ms")
        if duration_ms is None and self._start_time is not None:
            duration_ms = int((time.monotonic() - self._start_time) * 1000)

        metadata = {
            "session_id": event.get("session_id"),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": (
                input_tokens + output_tokens
                if input_tokens is not None and output_tokens is not None
                else None
            ),
            "total_cost_usd": event.get("total_cost_usd"),
            "duration_ms": duration_ms,
            "result_subtype": event.get("subtype") or "success",
            "final_text_id": self._last_text_id,
            "model_usage": model_usage,
        }
        metadata = {k: v for k, v in metadata.items() if v is not None}
        yield MessageMetadataChunk(metadata=metadata)
        yield Finish(metadata=metadata)


class MessageBuilder:
    """Accumulates chunks into the parts of one assistant message."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._parts: list[MessagePart] = []
        self._tools: OrderedDict[str, ToolInvocationPart] = OrderedDict()
        self._text = ""
        self.metadata: dict[str, Any] = {}

    def apply(self, chunk: Chunk) -> None:
        if isinstance(chunk, TextDelta):
            self._text += chunk.delta
        elif isinstance(chunk, TextEnd):
            self.flush_text()
        elif isinstance(chunk, ToolInputAvailable):
            existing = self._tools.get(chunk.call_id)
            if existing is not None:
                existing.input = chunk.input
                return
            part = ToolInvocationPart(
                call_id=chunk.call_id,
                tool_name=chunk.tool_name,
                input=chunk.input,
                started_at=self._clock(),
            )
            self._parts.append(part)
            self._tools[chunk.call_id] = part
        elif isinstance(chunk, ToolOutputAvailable):
            self.resolve_tool(chunk.call_id, chunk.output)
        elif isinstance(chunk, ToolOutputError):
            part = self._tools.get(chunk.call_id)
            # A question already answered keeps its answer.
            if part is not None and part.state != ToolState.RESULT:
                self.resolve_tool(chunk.call_id, chunk.error_text, is_error=True)
        elif isinstance(chunk, AskUserQuestionResult):
            self.resolve_tool(chunk.call_id, chunk.result)
        elif isinstance(chunk, MessageMetadataChunk):
            self.merge_metadata(chunk.metadata)

    def merge_metadata(self, metadata: dict[str, Any]) -> None:
        self.metadata.update({k: v for k, v in metadata.items() if v is not None})

    def resolve_tool(self, call_id: str, output: Any, is_error: bool = False) -> bool:
        part = self._tools.get(call_id)
        if part is None:
            logger.debug("Tool output for unknown call %s", call_id[:12])
            return False
        part.output = output
        part.is_error = is_error
        part.state = ToolState.RESULT
        return True

    def tool_part(self, call_id: str) -> ToolInvocationPart | None:
        return self._tools.get(call_id)

    def latest_calling(self, tool_name: str) -> ToolInvocationPart | None:
        for part in reversed(self._tools.values()):
            if part.tool_name == tool_name and part.state == ToolState.CALLING:
                return part
        return None

    def flush_text(self) -> None:
        if self._text.strip():
            self._parts.append(TextPart(text=self._text))
        self._text = ""

    def build(self) -> list[MessagePart]:
        self.flush_text()
        return list(self._parts)

    @property
    def parts(self) -> list[MessagePart]:
        return list(self._parts)
