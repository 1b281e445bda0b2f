"""Tool policy gate: decide whether the engine may run a tool call.

Wired into the engine's tool-permission callback. Plan mode restricts
mutations to markdown files, AskUserQuestion is routed to the approval
rendezvous in every mode, and calls from the local fallback engine get
their parameter names corrected first.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Union

from forkline.engine.approvals import EmitFn, ToolApprovalRendezvous
from forkline.engine.chunks import AskUserQuestionResult
from forkline.engine.models import ConversationMode

logger = logging.getLogger(__name__)

ASK_USER_QUESTION = "AskUserQuestion"
EXIT_PLAN_MODE = "ExitPlanMode"
PLAN_MODE_BLOCKED_TOOLS = frozenset({"Bash", "NotebookEdit"})
PLAN_MODE_EDIT_TOOLS = frozenset({"Edit", "Write"})

_MARKDOWN_RE = re.compile(r"\.md$", re.IGNORECASE)

EXIT_PLAN_MODE_MESSAGE = (
    "IMPORTANT: DONT IMPLEMENT THE PLAN UNTIL THE EXPLIT COMMAND. "
    "THE PLAN WAS **ONLY** PRESENTED TO USER, FINISH CURRENT MESSAGE "
    "AS SOON AS POSSIBLE"
)
PLAN_MODE_EDIT_MESSAGE = 'Only ".md" files can be modified in plan mode.'

# tool name -> [(wrong key, right key)]
_FALLBACK_PARAM_FIXES: dict[str, list[tuple[str, str]]] = {
    "Read": [("file", "file_path")],
    "Write": [("file", "file_path")],
    "Edit": [("file", "file_path")],
    "Glob": [("directory", "path"), ("dir", "path")],
    "Grep": [("query", "pattern"), ("directory", "path")],
    "Bash": [("cmd", "command")],
}


@dataclass
class PolicyAllow:
    updated_input: Any = None


@dataclass
class PolicyDeny:
    message: str


PolicyDecision = Union[PolicyAllow, PolicyDeny]


def fix_fallback_tool_input(tool_name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    """Rename parameters local models commonly get wrong."""
    fixed = dict(tool_input)
    for wrong, right in _FALLBACK_PARAM_FIXES.get(tool_name, []):
        if fixed.get(wrong) and not fixed.get(right):
            fixed[right] = fixed.pop(wrong)
            logger.debug("Fixed %s tool input: %s -> %s", tool_name, wrong, right)
    return fixed


class ToolPolicyGate:
    """Per-exchange tool gate bound to one sub-conversation's mode."""

    def __init__(
        self,
        mode: ConversationMode,
        sub_conversation_id: str,
        rendezvous: ToolApprovalRendezvous | None = None,
        emit: EmitFn | None = None,
        *,
        fallback: bool = False,
    ) -> None:
        self._mode = ConversationMode(mode)
        self._sub_id = sub_conversation_id
        self._rendezvous = rendezvous
        self._emit = emit
        self._fallback = fallback

    @property
    def mode(self) -> ConversationMode:
        return self._mode

    async def decide(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        call_id: str,
    ) -> PolicyDecision:
        tool_input = dict(tool_input or {})
        if self._fallback:
            tool_input = fix_fallback_tool_input(tool_name, tool_input)

        if self._mode == ConversationMode.PLAN:
            denied = self._plan_mode_check(tool_name, tool_input)
            if denied is not None:
                logger.info(
                    "Plan mode denied %s in %s", tool_name, self._sub_id[:8],
                )
                return denied

        if tool_name == ASK_USER_QUESTION:
            return await self._ask_user(tool_input, call_id)

        return PolicyAllow(updated_input=tool_input)

    def _plan_mode_check(
        self, tool_name: str, tool_input: dict[str, Any],
    ) -> PolicyDeny | None:
        if tool_name in PLAN_MODE_EDIT_TOOLS:
            file_path = tool_input.get("file_path")
            if not isinstance(file_path, str) or not _MARKDOWN_RE.search(file_path):
                return PolicyDeny(PLAN_MODE_EDIT_MESSAGE)
        elif tool_name == EXIT_PLAN_MODE:
            return PolicyDeny(EXIT_PLAN_MODE_MESSAGE)
        elif tool_name in PLAN_MODE_BLOCKED_TOOLS:
            return PolicyDeny(f'Tool "{tool_name}" blocked in plan mode.')
        return None

    async def _ask_user(self, tool_input: dict[str, Any], call_id: str) -> PolicyDecision:
        if self._rendezvous is None or self._emit is None:
            return PolicyDeny("No user is attached to answer questions")

        decision = await self._rendezvous.request_approval(
            call_id, self._sub_id, tool_input.get("questions"), self._emit,
        )
        if not decision.approved:
            message = decision.message or "Skipped"
            await self._emit(AskUserQuestionResult(call_id=call_id, result=message))
            return PolicyDeny(message)

        answers = None
        if isinstance(decision.updated_input, dict):
            answers = decision.updated_input.get("answers")
        await self._emit(
            AskUserQuestionResult(call_id=call_id, result={"answers": answers})
        )
        return PolicyAllow(updated_input=decision.updated_input)
