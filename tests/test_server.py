from __future__ import annotations

import json
import shutil
import tempfile
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from forkline.engine.config import EngineConfig
from forkline.engine.conversation_store import ConversationStore
from forkline.engine.models import ConnectionMethod, Message, MessageRole, TextPart
from forkline.engine.orchestrator import SessionOrchestrator
from forkline.engine.providers.env import Credential
from forkline.engine.selector import EngineSelector
from forkline.server.server import ForklineServer
from forkline.shared.services.history import HistoryService

from conftest import FakeProvider, StaticCatalog, StaticConnectivity, StaticCredentials, text_reply


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.strip().split("\n\n"):
        event_line, data_line = frame.split("\n", 1)
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


class TestForklineServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.store = ConversationStore(root / "forkline.db")
        self.provider = FakeProvider(text_reply("Hi", " there"))
        selector = EngineSelector(
            StaticCredentials(Credential(ConnectionMethod.API_KEY, "sk-test")),
            StaticConnectivity(True),
            StaticCatalog(),
        )
        self.orchestrator = SessionOrchestrator(
            self.store,
            selector,
            self.provider,
            config=EngineConfig(data_dir=str(root / "data")),
        )
        self.forkline_server = ForklineServer(
            self.orchestrator, self.store, HistoryService(self.store),
        )
        return self.forkline_server.app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _create_thread(self, **body) -> tuple[str, str]:
        resp = await self.client.post("/threads", json=body)
        assert resp.status == 201
        data = await resp.json()
        return data["thread"]["id"], data["sub_conversation"]["id"]

    async def test_health(self):
        resp = await self.client.get("/health", headers={"x-forkline-request-id": "abc"})
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"

    async def test_create_and_list_threads(self):
        thread_id, sub_id = await self._create_thread(name="T", workspace_path=None, mode="plan")

        resp = await self.client.get("/threads")
        threads = (await resp.json())["threads"]
        assert [t["id"] for t in threads] == [thread_id]

        resp = await self.client.get(f"/subs/{sub_id}")
        data = await resp.json()
        assert data["sub_conversation"]["mode"] == "plan"
        assert data["sub_conversation"]["messages"] == []
        assert data["active"] is False

    async def test_create_thread_rejects_unknown_mode(self):
        resp = await self.client.post("/threads", json={"mode": "yolo"})
        assert resp.status == 400
        assert self.store.list_threads() == []

    async def test_invalid_json_body(self):
        resp = await self.client.post("/threads", data="{nope", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        resp = await self.client.post("/threads", json=["not", "an", "object"])
        assert resp.status == 400

    async def test_sub_conversation_crud(self):
        thread_id, _ = await self._create_thread()

        resp = await self.client.post(f"/threads/{thread_id}/subs", json={"name": "side", "mode": "plan"})
        assert resp.status == 201
        sub_id = (await resp.json())["sub_conversation"]["id"]

        resp = await self.client.get(f"/threads/{thread_id}/subs")
        subs = (await resp.json())["sub_conversations"]
        assert len(subs) == 2
        assert all(s["active"] is False and "messages" not in s for s in subs)

        resp = await self.client.patch(f"/subs/{sub_id}", json={"name": "renamed", "mode": "agent"})
        updated = (await resp.json())["sub_conversation"]
        assert updated["name"] == "renamed"
        assert updated["mode"] == "agent"

        resp = await self.client.patch(f"/subs/{sub_id}", json={"name": "  "})
        assert resp.status == 400
        resp = await self.client.patch(f"/subs/{sub_id}", json={"mode": "yolo"})
        assert resp.status == 400

        resp = await self.client.delete(f"/subs/{sub_id}")
        assert (await resp.json())["status"] == "removed"
        resp = await self.client.get(f"/subs/{sub_id}")
        assert resp.status == 404

    async def test_unknown_thread_and_sub(self):
        assert (await self.client.get("/threads/missing/subs")).status == 404
        assert (await self.client.post("/threads/missing/subs", json={})).status == 404
        assert (await self.client.post("/threads/missing/archive")).status == 404
        assert (await self.client.get("/subs/missing")).status == 404
        assert (await self.client.post("/subs/missing/exchange", json={"prompt": "x"})).status == 404

    async def test_archive_thread(self):
        thread_id, _ = await self._create_thread()
        resp = await self.client.post(f"/threads/{thread_id}/archive")
        assert (await resp.json())["status"] == "archived"
        resp = await self.client.get("/threads?archived=1")
        assert (await resp.json())["threads"][0]["archived_at"] is not None
        resp = await self.client.get("/threads")
        assert (await resp.json())["threads"] == []

    async def test_exchange_streams_sse_and_persists(self):
        _, sub_id = await self._create_thread()

        resp = await self.client.post(f"/subs/{sub_id}/exchange", json={"prompt": "hello"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        events = _sse_events(await resp.text())

        names = [name for name, _ in events]
        assert names[0] == "text-start"
        assert names[-1] == "finish"
        assert all(name == data["type"] for name, data in events)
        deltas = [data["delta"] for name, data in events if name == "text-delta"]
        assert deltas == ["Hi", " there"]

        resp = await self.client.get(f"/subs/{sub_id}")
        sub = (await resp.json())["sub_conversation"]
        assert [m["role"] for m in sub["messages"]] == ["user", "assistant"]
        assert sub["messages"][1]["parts"] == [{"type": "text", "text": "Hi there"}]
        assert sub["session_id"] == "sess-1"
        assert sub["stream_id"] is None

    async def test_exchange_passes_attachments(self):
        _, sub_id = await self._create_thread()
        resp = await self.client.post(f"/subs/{sub_id}/exchange", json={
            "prompt": "read this",
            "attachments": [{"kind": "file", "media_type": "text/plain", "path": "a.txt"}],
        })
        await resp.text()
        assert self.provider.requests[0].prompt == "read this\n\nAttached files:\n- a.txt"

    async def test_exchange_validation(self):
        _, sub_id = await self._create_thread()
        assert (await self.client.post(f"/subs/{sub_id}/exchange", json={})).status == 400
        resp = await self.client.post(f"/subs/{sub_id}/exchange", json={
            "prompt": "x", "attachments": [{"path": "a"}],
        })
        assert resp.status == 400
        resp = await self.client.post(f"/subs/{sub_id}/exchange", json={
            "prompt": "x", "custom_config": {"model": "m"},
        })
        assert resp.status == 400
        assert self.provider.requests == []

    async def test_rollback_and_fork(self):
        thread_id, sub_id = await self._create_thread(name="T")
        self.store.update_sub_conversation(sub_id, session_id="sess-1", messages=[
            Message(role=MessageRole.USER, parts=[TextPart(text="q1")]),
            Message(role=MessageRole.ASSISTANT, parts=[TextPart(text="a1")],
                    metadata={"sdk_message_uuid": "u1"}),
            Message(role=MessageRole.USER, parts=[TextPart(text="q2")]),
        ])

        resp = await self.client.post(f"/subs/{sub_id}/rollback", json={})
        assert resp.status == 400
        resp = await self.client.post(f"/subs/{sub_id}/rollback", json={"sdk_message_uuid": "zzz"})
        assert resp.status == 409
        assert (await resp.json())["error"] == "Message not found"

        resp = await self.client.post(f"/subs/{sub_id}/fork", json={"name": "branch"})
        assert resp.status == 201
        forked = (await resp.json())["sub_conversation"]
        assert forked["name"] == "branch"
        assert forked["thread_id"] == thread_id
        assert forked["messages"][-1]["metadata"]["should_fork_resume"] is True

        resp = await self.client.post(f"/subs/{sub_id}/rollback", json={"sdk_message_uuid": "u1"})
        data = await resp.json()
        assert data["success"] is True
        assert [m["parts"][0]["text"] for m in data["messages"]] == ["q1", "a1"]

    async def test_fork_without_target(self):
        _, sub_id = await self._create_thread()
        resp = await self.client.post(f"/subs/{sub_id}/fork", json={})
        assert resp.status == 404

    async def test_cancel_and_approvals(self):
        _, sub_id = await self._create_thread()
        resp = await self.client.post(f"/subs/{sub_id}/cancel")
        assert await resp.json() == {"cancelled": False}

        resp = await self.client.post("/approvals/call-1", json={})
        assert resp.status == 400
        resp = await self.client.post("/approvals/call-1", json={"approved": True})
        assert resp.status == 404

    async def test_rollback_refused_while_cancelled_exchange_is_writing(self):
        _, sub_id = await self._create_thread()
        self.orchestrator.is_busy = lambda sid: sid == sub_id
        resp = await self.client.post(f"/subs/{sub_id}/rollback", json={"sdk_message_uuid": "u1"})
        assert resp.status == 409
        assert (await resp.json())["error"] == "An exchange is in progress"
