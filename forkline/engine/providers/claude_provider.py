"""Claude Agent SDK provider.

Wraps claude_agent_sdk.query() for one streaming exchange. The local
fallback engine is the same SDK pointed at an Anthropic-compatible Ollama
endpoint through the request environment.
"""
from __future__ import annotations

import logging
import shutil
from typing import Any, AsyncIterator

from forkline.engine.errors import ErrorCategory, NormalizedError, TransportError
from forkline.engine.models import CancellationToken, ResumeKind
from forkline.engine.policy import PolicyAllow

from .base import EngineRequest, Provider

logger = logging.getLogger(__name__)


def _block_to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": block.thinking}
    if hasattr(block, "tool_use_id"):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": getattr(block, "content", None),
            "is_error": bool(getattr(block, "is_error", False)),
        }
    if hasattr(block, "name") and hasattr(block, "input"):
        return {
            "type": "tool_use",
            "id": getattr(block, "id", None),
            "name": block.name,
            "input": block.input,
        }
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text}
    return {"type": "unknown", "repr": repr(block)}


def sdk_message_to_event(message: Any) -> dict[str, Any]:
    """Convert an SDK message object to the plain event dict the transformer reads."""
    if isinstance(message, dict):
        return message

    kind = type(message).__name__
    common: dict[str, Any] = {}
    for attr in ("uuid", "session_id"):
        value = getattr(message, attr, None)
        if value:
            common[attr] = value
    if hasattr(message, "parent_tool_use_id"):
        common["parent_tool_use_id"] = message.parent_tool_use_id

    if kind == "StreamEvent":
        return {"type": "stream_event", "event": message.event, **common}

    if kind == "SystemMessage":
        data = dict(getattr(message, "data", None) or {})
        data.pop("type", None)
        return {**data, "type": "system", "subtype": message.subtype, **common}

    if kind == "ResultMessage" or hasattr(message, "total_cost_usd"):
        return {
            "type": "result",
            "subtype": getattr(message, "subtype", None),
            "is_error": getattr(message, "is_error", False),
            "duration_ms": getattr(message, "duration_ms", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None) or {},
            "model_usage": getattr(message, "model_usage", None),
            "result": getattr(message, "result", None),
            **common,
        }

    content = getattr(message, "content", None)
    blocks = (
        [_block_to_dict(b) for b in content]
        if isinstance(content, list) else content
    )
    if kind == "AssistantMessage" or hasattr(message, "model"):
        event = {
            "type": "assistant",
            "message": {"content": blocks, "model": getattr(message, "model", None)},
            **common,
        }
        error = getattr(message, "error", None)
        if error:
            event["error"] = error
        return event

    return {
        "type": "user",
        "message": {"content": blocks},
        "tool_use_result": getattr(message, "tool_use_result", None),
        **common,
    }


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK."""

    def __init__(self, cli_path: str | None = None) -> None:
        self._cli_path = shutil.which(cli_path) if cli_path else None
        if cli_path and not self._cli_path:
            logger.warning(
                "Configured engine CLI not found: %s; using SDK default", cli_path,
            )

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return True

    def build_options_kwargs(self, request: EngineRequest) -> dict[str, Any]:
        options_kwargs: dict[str, Any] = dict(
            cwd=request.cwd,
            permission_mode=request.permission_mode,
            env=dict(request.env),
            include_partial_messages=True,
        )
        if request.system_prompt is not None:
            options_kwargs["system_prompt"] = request.system_prompt
        if request.stderr is not None:
            options_kwargs["stderr"] = request.stderr
        if request.model:
            options_kwargs["model"] = request.model
        if request.max_thinking_tokens:
            options_kwargs["max_thinking_tokens"] = request.max_thinking_tokens
        if request.setting_sources:
            options_kwargs["setting_sources"] = list(request.setting_sources)
        cli_path = request.cli_path or self._cli_path
        if cli_path:
            options_kwargs["cli_path"] = cli_path

        directive = request.resume
        if directive.kind != ResumeKind.FRESH and directive.session_id:
            options_kwargs["resume"] = directive.session_id
            if directive.kind in (ResumeKind.ROLLBACK, ResumeKind.FORK) and directive.at_uuid:
                options_kwargs["extra_args"] = {"resume-session-at": directive.at_uuid}
            if directive.kind == ResumeKind.FORK:
                options_kwargs["fork_session"] = True
        return options_kwargs

    async def run(
        self,
        request: EngineRequest,
        abort: CancellationToken,
    ) -> AsyncIterator[dict[str, Any]]:
        from claude_agent_sdk import ClaudeAgentOptions, CLINotFoundError, query
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        options_kwargs = self.build_options_kwargs(request)

        if request.can_use_tool is not None:
            callback = request.can_use_tool

            async def _can_use_tool(tool_name: str, tool_input: dict, context: Any):
                call_id = getattr(context, "tool_use_id", None)
                decision = await callback(tool_name, tool_input, call_id)
                if isinstance(decision, PolicyAllow):
                    return PermissionResultAllow(updated_input=decision.updated_input)
                return PermissionResultDeny(message=decision.message)

            options_kwargs["can_use_tool"] = _can_use_tool

        logger.info(
            "Engine query model=%s mode=%s resume=%s cwd=%s cli=%s",
            request.model or "<default>",
            request.permission_mode,
            request.resume.kind.value,
            request.cwd,
            options_kwargs.get("cli_path", "<sdk-bundled>"),
        )
        options = ClaudeAgentOptions(**options_kwargs)

        # can_use_tool needs the streaming prompt form, so always send
        # an async iterable even for plain text.
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": request.prompt},
                "parent_tool_use_id": None,
            }

        stream = query(prompt=_prompt_stream(), options=options)
        try:
            async for message in stream:
                if abort.cancelled:
                    logger.debug("Engine stream aborted: %s", abort.reason)
                    break
                yield sdk_message_to_event(message)
        except CLINotFoundError as exc:
            raise TransportError(
                NormalizedError(
                    ErrorCategory.EXECUTABLE_NOT_FOUND,
                    f"Required executable not found in PATH: {exc}",
                    {"context": "Required executable not found in PATH",
                     "exception_type": type(exc).__name__},
                ),
                exc,
            ) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
