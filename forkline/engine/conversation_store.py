"""SQLite-backed store for threads and sub-conversations.

Each sub-conversation row holds its whole message list as one JSON
array; writes replace the array (last write wins). Connections are
opened per call so the store can be shared freely within one process.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from forkline.engine.models import (
    AttachmentPart,
    ConversationMode,
    ImagePart,
    Message,
    MessagePart,
    MessageRole,
    SubConversation,
    TextPart,
    Thread,
    ToolInvocationPart,
    ToolState,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat()


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── Message (de)serialization ──


def part_to_dict(part: MessagePart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": part.type, "text": part.text}
    if isinstance(part, ToolInvocationPart):
        return {
            "type": part.type,
            "call_id": part.call_id,
            "tool_name": part.tool_name,
            "input": part.input,
            "state": part.state.value,
            "output": part.output,
            "is_error": part.is_error,
            "started_at": part.started_at,
        }
    if isinstance(part, ImagePart):
        return {
            "type": part.type,
            "base64_data": part.base64_data,
            "media_type": part.media_type,
            "filename": part.filename,
        }
    return {
        "type": part.type,
        "path": part.path,
        "media_type": part.media_type,
        "filename": part.filename,
    }


def dict_to_part(data: dict[str, Any]) -> MessagePart:
    kind = data.get("type", "text")
    if kind == "tool-invocation":
        return ToolInvocationPart(
            call_id=data["call_id"],
            tool_name=data["tool_name"],
            input=data.get("input"),
            state=ToolState(data.get("state", ToolState.CALLING.value)),
            output=data.get("output"),
            is_error=bool(data.get("is_error", False)),
            started_at=float(data.get("started_at") or 0.0),
        )
    if kind == "image":
        return ImagePart(
            base64_data=data.get("base64_data", ""),
            media_type=data.get("media_type", "image/png"),
            filename=data.get("filename"),
        )
    if kind == "attachment":
        return AttachmentPart(
            path=data.get("path", ""),
            media_type=data.get("media_type", "application/octet-stream"),
            filename=data.get("filename"),
        )
    return TextPart(text=data.get("text", ""))


def message_to_dict(msg: Message) -> dict[str, Any]:
    return {
        "id": msg.id,
        "role": msg.role.value,
        "parts": [part_to_dict(p) for p in msg.parts],
        "metadata": dict(msg.metadata),
    }


def dict_to_message(data: dict[str, Any]) -> Message:
    return Message(
        role=MessageRole(data["role"]),
        parts=[dict_to_part(p) for p in data.get("parts", [])],
        metadata=dict(data.get("metadata") or {}),
        id=data.get("id") or Message(role=MessageRole.USER).id,
    )


class ConversationStore:
    """Persists threads and sub-conversations in SQLite."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    workspace_path TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    archived_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sub_conversations (
                    id TEXT PRIMARY KEY,
                    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                    name TEXT,
                    mode TEXT NOT NULL DEFAULT 'agent',
                    messages TEXT NOT NULL DEFAULT '[]',
                    session_id TEXT,
                    stream_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sub_conversations_thread "
                "ON sub_conversations(thread_id)"
            )
            conn.commit()

    # ── Threads ──

    def create_thread(
        self,
        name: str | None = None,
        workspace_path: str | None = None,
    ) -> Thread:
        thread = Thread(name=name, workspace_path=workspace_path)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO threads(id, name, workspace_path, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    thread.id, thread.name, thread.workspace_path,
                    _iso(thread.created_at), _iso(thread.updated_at),
                ),
            )
            conn.commit()
        logger.info("Created thread %s workspace=%s", thread.id[:8], workspace_path)
        return thread

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
        return self._row_to_thread(row) if row is not None else None

    def list_threads(self, include_archived: bool = False) -> list[Thread]:
        query = "SELECT * FROM threads"
        if not include_archived:
            query += " WHERE archived_at IS NULL"
        query += " ORDER BY updated_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_thread(r) for r in rows]

    def touch_thread(self, thread_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE threads SET updated_at = ? WHERE id = ?",
                (_iso(_utc_now()), thread_id),
            )
            conn.commit()

    def archive_thread(self, thread_id: str) -> bool:
        now = _iso(_utc_now())
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE threads SET archived_at = ?, updated_at = ? WHERE id = ?",
                (now, now, thread_id),
            )
            conn.commit()
        return cur.rowcount > 0

    # ── Sub-conversations ──

    def create_sub_conversation(
        self,
        thread_id: str,
        name: str | None = None,
        mode: ConversationMode = ConversationMode.AGENT,
        messages: list[Message] | None = None,
        session_id: str | None = None,
    ) -> SubConversation:
        sub = SubConversation(
            thread_id=thread_id,
            name=name,
            mode=ConversationMode(mode),
            messages=list(messages or []),
            session_id=session_id,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sub_conversations(
                    id, thread_id, name, mode, messages, session_id,
                    stream_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    sub.id, thread_id, sub.name, sub.mode.value,
                    self._dump_messages(sub.messages), sub.session_id,
                    _iso(sub.created_at), _iso(sub.updated_at),
                ),
            )
            conn.commit()
        logger.info(
            "Created sub-conversation %s in thread %s mode=%s",
            sub.id[:8], thread_id[:8], sub.mode.value,
        )
        return sub

    def get_sub_conversation(self, sub_id: str) -> SubConversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sub_conversations WHERE id = ?", (sub_id,)
            ).fetchone()
        return self._row_to_sub(row) if row is not None else None

    def list_sub_conversations(self, thread_id: str) -> list[SubConversation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sub_conversations WHERE thread_id = ? ORDER BY created_at",
                (thread_id,),
            ).fetchall()
        return [self._row_to_sub(r) for r in rows]

    def update_sub_conversation(
        self,
        sub_id: str,
        *,
        messages: list[Message] = _UNSET,
        session_id: str | None = _UNSET,
        stream_id: str | None = _UNSET,
        name: str | None = _UNSET,
        mode: ConversationMode = _UNSET,
    ) -> bool:
        """Update the given columns of a sub-conversation row.

        Only arguments that are passed are written; ``None`` clears a
        nullable column. Returns False when the row does not exist.
        """
        columns: list[str] = []
        values: list[Any] = []
        if messages is not _UNSET:
            columns.append("messages = ?")
            values.append(self._dump_messages(messages))
        if session_id is not _UNSET:
            columns.append("session_id = ?")
            values.append(session_id)
        if stream_id is not _UNSET:
            columns.append("stream_id = ?")
            values.append(stream_id)
        if name is not _UNSET:
            columns.append("name = ?")
            values.append(name)
        if mode is not _UNSET:
            columns.append("mode = ?")
            values.append(ConversationMode(mode).value)
        columns.append("updated_at = ?")
        values.append(_iso(_utc_now()))
        values.append(sub_id)

        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE sub_conversations SET {', '.join(columns)} WHERE id = ?",
                values,
            )
            conn.commit()
        return cur.rowcount > 0

    def delete_sub_conversation(self, sub_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM sub_conversations WHERE id = ?", (sub_id,)
            )
            conn.commit()
        return cur.rowcount > 0

    # ── Row mapping ──

    @staticmethod
    def _dump_messages(messages: list[Message]) -> str:
        return json.dumps([message_to_dict(m) for m in messages])

    @staticmethod
    def _load_messages(raw: str | None) -> list[Message]:
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Corrupt message array in store; treating as empty")
            return []
        return [dict_to_message(m) for m in data if isinstance(m, dict)]

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> Thread:
        return Thread(
            id=row["id"],
            name=row["name"],
            workspace_path=row["workspace_path"],
            created_at=_parse_timestamp(row["created_at"]) or _utc_now(),
            updated_at=_parse_timestamp(row["updated_at"]) or _utc_now(),
            archived_at=_parse_timestamp(row["archived_at"]),
        )

    def _row_to_sub(self, row: sqlite3.Row) -> SubConversation:
        return SubConversation(
            id=row["id"],
            thread_id=row["thread_id"],
            name=row["name"],
            mode=ConversationMode(row["mode"] or ConversationMode.AGENT.value),
            messages=self._load_messages(row["messages"]),
            session_id=row["session_id"],
            stream_id=row["stream_id"],
            created_at=_parse_timestamp(row["created_at"]) or _utc_now(),
            updated_at=_parse_timestamp(row["updated_at"]) or _utc_now(),
        )
