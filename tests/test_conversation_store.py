from __future__ import annotations

import sqlite3

from forkline.engine.conversation_store import (
    ConversationStore,
    dict_to_message,
    message_to_dict,
)
from forkline.engine.models import (
    AttachmentPart,
    ConversationMode,
    ImagePart,
    Message,
    MessageRole,
    TextPart,
    ToolInvocationPart,
    ToolState,
)


def test_creates_parent_directory(tmp_path) -> None:
    store = ConversationStore(tmp_path / "nested" / "dir" / "f.db")
    assert store.db_path.exists()


def test_thread_lifecycle(store) -> None:
    first = store.create_thread(name="one", workspace_path="/w1")
    second = store.create_thread(name="two")

    assert store.get_thread(first.id).workspace_path == "/w1"
    assert store.get_thread("missing") is None
    assert {t.id for t in store.list_threads()} == {first.id, second.id}

    assert store.archive_thread(first.id) is True
    assert [t.id for t in store.list_threads()] == [second.id]
    assert len(store.list_threads(include_archived=True)) == 2
    assert store.get_thread(first.id).archived_at is not None
    assert store.archive_thread("missing") is False


def test_sub_conversation_round_trips_every_part_kind(store) -> None:
    thread = store.create_thread()
    messages = [
        Message(role=MessageRole.USER, parts=[
            TextPart(text="look"),
            ImagePart(base64_data="AAA", media_type="image/png", filename="s.png"),
            AttachmentPart(path="notes.txt", media_type="text/plain"),
        ]),
        Message(
            role=MessageRole.ASSISTANT,
            parts=[ToolInvocationPart(
                call_id="c1", tool_name="Read", input={"file_path": "a"},
                state=ToolState.RESULT, output="text", started_at=12.5,
            )],
            metadata={"sdk_message_uuid": "u1", "session_id": "s"},
        ),
    ]
    sub = store.create_sub_conversation(
        thread.id, name="main", mode=ConversationMode.PLAN, messages=messages, session_id="s",
    )

    loaded = store.get_sub_conversation(sub.id)
    assert loaded.mode == ConversationMode.PLAN
    assert loaded.session_id == "s"
    assert loaded.stream_id is None
    assert loaded.messages == messages
    assert loaded.last_assistant().metadata["sdk_message_uuid"] == "u1"


def test_update_only_touches_given_columns(store) -> None:
    thread = store.create_thread()
    sub = store.create_sub_conversation(thread.id, name="a", session_id="s1")

    assert store.update_sub_conversation(sub.id, stream_id="x") is True
    loaded = store.get_sub_conversation(sub.id)
    assert loaded.stream_id == "x"
    assert loaded.session_id == "s1"
    assert loaded.name == "a"

    store.update_sub_conversation(sub.id, stream_id=None, session_id=None, mode="plan")
    loaded = store.get_sub_conversation(sub.id)
    assert loaded.stream_id is None
    assert loaded.session_id is None
    assert loaded.mode == ConversationMode.PLAN
    assert store.update_sub_conversation("missing", name="b") is False


def test_list_and_delete_sub_conversations(store) -> None:
    thread = store.create_thread()
    first = store.create_sub_conversation(thread.id, name="a")
    second = store.create_sub_conversation(thread.id, name="b")

    assert {s.id for s in store.list_sub_conversations(thread.id)} == {first.id, second.id}
    assert store.list_sub_conversations("other") == []
    assert store.delete_sub_conversation(first.id) is True
    assert store.delete_sub_conversation(first.id) is False
    assert [s.id for s in store.list_sub_conversations(thread.id)] == [second.id]


def test_corrupt_message_column_loads_empty(store) -> None:
    thread = store.create_thread()
    sub = store.create_sub_conversation(thread.id)
    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE sub_conversations SET messages = ? WHERE id = ?", ("{not json", sub.id))
    conn.commit()
    conn.close()

    assert store.get_sub_conversation(sub.id).messages == []


def test_message_dict_defaults() -> None:
    msg = dict_to_message({"role": "assistant", "parts": [{"text": "x"}]})
    assert msg.parts == [TextPart(text="x")]
    assert msg.metadata == {}
    assert msg.id
    assert message_to_dict(msg)["parts"] == [{"type": "text", "text": "x"}]
