"""Conversation history operations: rollback, fork and small row edits.

Rollback restores the workspace first and only then truncates the
stored messages, so a failed restore leaves both untouched. The
rollback/fork flags set here are consumed by the next exchange.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from forkline.engine.conversation_store import ConversationStore
from forkline.engine.models import (
    ConversationMode,
    Message,
    MessageRole,
    SubConversation,
)
from forkline.shared.services.snapshot import RollbackSnapshotService

logger = logging.getLogger(__name__)


@dataclass
class HistoryResult:
    success: bool
    messages: list[Message] = field(default_factory=list)
    error: str | None = None
    sub_conversation: SubConversation | None = None


def _find_by_uuid(messages: list[Message], sdk_message_uuid: str) -> int:
    for index, msg in enumerate(messages):
        if msg.metadata.get("sdk_message_uuid") == sdk_message_uuid:
            return index
    return -1


def _with_flag(messages: list[Message], flag: str) -> list[Message]:
    """Copy ``messages`` with every resume flag removed and ``flag`` set on the last one."""
    result: list[Message] = []
    last = len(messages) - 1
    for index, msg in enumerate(messages):
        metadata = {
            k: v for k, v in msg.metadata.items()
            if k not in ("should_resume", "should_fork_resume")
        }
        if index == last:
            metadata[flag] = True
        result.append(Message(
            role=msg.role,
            parts=copy.deepcopy(msg.parts),
            metadata=metadata,
            id=msg.id,
        ))
    return result


class HistoryService:
    """History mutations on top of the conversation store."""

    def __init__(
        self,
        store: ConversationStore,
        snapshots: RollbackSnapshotService | None = None,
    ) -> None:
        self._store = store
        self._snapshots = snapshots

    def rollback_to_message(self, sub_id: str, sdk_message_uuid: str) -> HistoryResult:
        """Rewind a sub-conversation (and its workspace) to an assistant message."""
        sub = self._store.get_sub_conversation(sub_id)
        if sub is None:
            return HistoryResult(False, error="Sub-conversation not found")

        target = _find_by_uuid(sub.messages, sdk_message_uuid)
        if target == -1:
            return HistoryResult(False, error="Message not found")

        thread = self._store.get_thread(sub.thread_id)
        workspace = thread.workspace_path if thread is not None else None
        if workspace:
            if self._snapshots is None:
                return HistoryResult(False, error="Rollback snapshots are not available")
            result = self._snapshots.apply(workspace, sdk_message_uuid)
            if not result.found:
                return HistoryResult(
                    False, error="Checkpoint not found - cannot rollback git state",
                )
            if not result.success:
                return HistoryResult(False, error=f"Git rollback failed: {result.error}")

        truncated = _with_flag(sub.messages[: target + 1], "should_resume")
        self._store.update_sub_conversation(sub_id, messages=truncated)
        logger.info(
            "Rolled back %s to %s (%d -> %d messages)",
            sub_id[:8], sdk_message_uuid[:8], len(sub.messages), len(truncated),
        )
        return HistoryResult(True, messages=truncated)

    def fork_sub_conversation(
        self,
        sub_id: str,
        sdk_message_uuid: str | None = None,
        name: str | None = None,
    ) -> HistoryResult:
        """Branch a sub-conversation into a new one in the same thread.

        Without ``sdk_message_uuid`` the fork point is the last assistant
        message that carries one. The new branch shares the session
        pointer; its first exchange forks the engine session there.
        """
        sub = self._store.get_sub_conversation(sub_id)
        if sub is None:
            return HistoryResult(False, error="Sub-conversation not found")

        if sdk_message_uuid is None:
            target = next(
                (
                    i for i in range(len(sub.messages) - 1, -1, -1)
                    if sub.messages[i].role == MessageRole.ASSISTANT
                    and sub.messages[i].metadata.get("sdk_message_uuid")
                ),
                -1,
            )
        else:
            target = _find_by_uuid(sub.messages, sdk_message_uuid)
        if target == -1:
            return HistoryResult(False, error="Message not found")

        messages = _with_flag(sub.messages[: target + 1], "should_fork_resume")
        forked = self._store.create_sub_conversation(
            sub.thread_id,
            name=name or (f"{sub.name} (fork)" if sub.name else "Fork"),
            mode=sub.mode,
            messages=messages,
            session_id=sub.session_id,
        )
        logger.info(
            "Forked %s into %s at message %d",
            sub_id[:8], forked.id[:8], target,
        )
        return HistoryResult(True, messages=messages, sub_conversation=forked)

    def rename(self, sub_id: str, name: str) -> bool:
        if not name.strip():
            raise ValueError("name must not be empty")
        return self._store.update_sub_conversation(sub_id, name=name)

    def set_mode(self, sub_id: str, mode: ConversationMode | str) -> bool:
        return self._store.update_sub_conversation(sub_id, mode=ConversationMode(mode))

    def archive_thread(self, thread_id: str) -> bool:
        archived = self._store.archive_thread(thread_id)
        if archived:
            logger.info("Archived thread %s", thread_id[:8])
        return archived
