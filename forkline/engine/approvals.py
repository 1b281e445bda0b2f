"""Rendezvous between an engine tool call and a user's answer.

The engine blocks inside its tool-permission callback while the UI asks
the user. Each pending call is resolved exactly once: by ``respond()``,
by the bounded timeout, or by ``clear()`` when the exchange is torn down.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from forkline.engine.chunks import AskUserQuestion, AskUserQuestionTimeout, Chunk
from forkline.engine.errors import ApprovalTimeoutError
from forkline.engine.models import ApprovalDecision, PendingToolApproval

logger = logging.getLogger(__name__)

EmitFn = Callable[[Chunk], Awaitable[None]]


class ToolApprovalRendezvous:
    """Registry of pending tool approvals keyed by call id."""

    def __init__(self, timeout_seconds: float = 60.0) -> None:
        self._timeout = timeout_seconds
        self._pending: dict[str, PendingToolApproval] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def pending_ids(self, sub_conversation_id: str | None = None) -> list[str]:
        return [
            call_id for call_id, entry in self._pending.items()
            if sub_conversation_id is None
            or entry.sub_conversation_id == sub_conversation_id
        ]

    async def request_approval(
        self,
        call_id: str,
        sub_conversation_id: str,
        questions: Any,
        emit: EmitFn,
    ) -> ApprovalDecision:
        """Ask the UI and wait for the answer.

        Emits ``ask-user-question`` on start. On timeout the entry is
        removed, ``ask-user-question-timeout`` is emitted and the call is
        denied with "Timed out".
        """
        loop = asyncio.get_running_loop()
        entry = PendingToolApproval(
            call_id=call_id,
            sub_conversation_id=sub_conversation_id,
            future=loop.create_future(),
            deadline=time.monotonic() + self._timeout,
        )
        previous = self._pending.get(call_id)
        if previous is not None and not previous.future.done():
            previous.future.set_result(
                ApprovalDecision(approved=False, message="Superseded")
            )
        self._pending[call_id] = entry
        logger.info(
            "Awaiting user answer for %s in %s (timeout=%.0fs)",
            call_id[:12], sub_conversation_id[:8], self._timeout,
        )

        await emit(AskUserQuestion(
            call_id=call_id,
            questions=questions if isinstance(questions, list) else [],
        ))

        try:
            return await self._wait(entry)
        except ApprovalTimeoutError as exc:
            logger.warning("%s", exc)
            await emit(AskUserQuestionTimeout(call_id=call_id))
            return ApprovalDecision(approved=False, message="Timed out")

    async def _wait(self, entry: PendingToolApproval) -> ApprovalDecision:
        remaining = max(0.0, entry.deadline - time.monotonic())
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), remaining)
        except asyncio.TimeoutError:
            if self._pending.get(entry.call_id) is entry:
                del self._pending[entry.call_id]
            if entry.future.done():
                # Answered at the deadline; the answer wins.
                return entry.future.result()
            entry.future.set_result(
                ApprovalDecision(approved=False, message="Timed out")
            )
            raise ApprovalTimeoutError(entry.call_id, self._timeout)
        finally:
            if self._pending.get(entry.call_id) is entry and entry.future.done():
                del self._pending[entry.call_id]

    def respond(
        self,
        call_id: str,
        approved: bool,
        message: str | None = None,
        updated_input: Any = None,
    ) -> bool:
        """Resolve a pending approval. Returns False if nothing is pending."""
        entry = self._pending.pop(call_id, None)
        if entry is None or entry.future.done():
            logger.debug("No pending approval for %s", call_id[:12])
            return False
        entry.future.set_result(ApprovalDecision(
            approved=approved, message=message, updated_input=updated_input,
        ))
        logger.info(
            "Approval %s resolved approved=%s", call_id[:12], approved,
        )
        return True

    def clear(self, reason: str, sub_conversation_id: str | None = None) -> int:
        """Deny every pending approval (optionally only for one sub-conversation)."""
        cleared = 0
        for call_id in self.pending_ids(sub_conversation_id):
            entry = self._pending.pop(call_id)
            if not entry.future.done():
                entry.future.set_result(
                    ApprovalDecision(approved=False, message=reason)
                )
                cleared += 1
        if cleared:
            logger.info(
                "Cleared %d pending approval(s): %s", cleared, reason,
            )
        return cleared
