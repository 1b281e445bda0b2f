"""Abstract base for engine providers.

A provider wraps one agent runtime and turns a single exchange request
into a stream of plain event dicts (``stream_event``, ``assistant``,
``user``, ``system``, ``result``) for the stream transformer.
"""
from __future__ import annotations

import abc
import logging
import shutil
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from forkline.engine.models import CancellationToken, ResumeDirective
from forkline.engine.policy import PolicyDecision

logger = logging.getLogger(__name__)

# (tool_name, tool_input, call_id or None) -> decision
ToolCallback = Callable[[str, dict, "str | None"], Awaitable[PolicyDecision]]


@dataclass
class EngineRequest:
    """Everything a provider needs to run one exchange."""
    prompt: str | list[dict[str, Any]]
    cwd: str | None = None
    system_prompt: dict[str, Any] | str | None = None
    can_use_tool: ToolCallback | None = None
    resume: ResumeDirective = field(default_factory=ResumeDirective.fresh)
    env: dict[str, str] = field(default_factory=dict)
    model: str | None = None
    permission_mode: str = "bypassPermissions"
    stderr: Callable[[str], None] | None = None
    max_thinking_tokens: int | None = None
    setting_sources: list[str] | None = None
    cli_path: str | None = None


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude')."""

    @abc.abstractmethod
    def run(
        self,
        request: EngineRequest,
        abort: CancellationToken,
    ) -> AsyncIterator[dict[str, Any]]:
        """Run one exchange, yielding raw engine events.

        Implementations stop yielding once ``abort`` is cancelled and
        raise on transport failure.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's runtime is installed."""

    def resolve_command(self, command: str | None, fallback: str | None = None) -> str | None:
        """Prefer an explicitly configured binary, then ``fallback`` on PATH.

        A configured command that is not on PATH is kept as-is so the
        error surfaced later names what the user configured.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback

    async def shutdown(self) -> None:
        """Clean up resources. Default no-op."""
        return None
