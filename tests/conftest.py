from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from forkline.engine.config import EngineConfig
from forkline.engine.conversation_store import ConversationStore
from forkline.engine.models import ConnectionMethod
from forkline.engine.orchestrator import SessionOrchestrator
from forkline.engine.providers.base import EngineRequest, Provider
from forkline.engine.providers.env import Credential
from forkline.engine.selector import EngineSelector


class FakeProvider(Provider):
    """Replays scripted attempts.

    Each script is a list of steps: a dict is yielded as an engine event,
    an exception is raised, an ``asyncio.Event`` is awaited and an async
    callable is awaited with the request (a dict it returns is yielded).
    """

    def __init__(self, *scripts: list[Any]) -> None:
        self.scripts = list(scripts)
        self.requests: list[EngineRequest] = []
        self.closed = 0

    @property
    def name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    async def run(self, request, abort):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else []
        try:
            for step in script:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, asyncio.Event):
                    await step.wait()
                    continue
                if callable(step):
                    result = await step(request)
                    if isinstance(result, dict):
                        yield result
                    continue
                yield step
        finally:
            self.closed += 1


class StaticCredentials:
    def __init__(self, credential: Credential | None = None) -> None:
        self.credential = credential

    async def get_valid_credential(self):
        return self.credential


class StaticConnectivity:
    def __init__(self, online: bool = True) -> None:
        self.online = online
        self.calls = 0

    async def check_connectivity(self) -> bool:
        self.calls += 1
        return self.online


class StaticCatalog:
    def __init__(self, models: list[str] | None = None) -> None:
        self.models = list(models or [])

    async def list_local_fallback_models(self) -> list[str]:
        return list(self.models)


def text_reply(
    *deltas: str,
    session_id: str = "sess-1",
    message_uuid: str = "uuid-1",
    cost: float = 0.01,
) -> list[dict[str, Any]]:
    """Engine events for one streamed text answer followed by a result."""
    events: list[dict[str, Any]] = [
        {"type": "system", "subtype": "init", "session_id": session_id},
        {"type": "stream_event", "event": {"type": "message_start"}, "session_id": session_id},
        {
            "type": "stream_event",
            "event": {"type": "content_block_start", "content_block": {"type": "text", "text": ""}},
        },
    ]
    for delta in deltas:
        events.append({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": delta}},
        })
    events.append({"type": "stream_event", "event": {"type": "content_block_stop"}})
    events.append({
        "type": "assistant",
        "uuid": message_uuid,
        "session_id": session_id,
        "message": {"content": [{"type": "text", "text": "".join(deltas)}]},
    })
    events.append({
        "type": "result",
        "subtype": "success",
        "session_id": session_id,
        "usage": {"input_tokens": 3, "output_tokens": 5},
        "total_cost_usd": cost,
        "duration_ms": 12,
    })
    return events


def policy_rejection() -> dict[str, Any]:
    return {
        "type": "assistant",
        "error": "invalid_request",
        "message": {
            "content": [{"type": "text", "text": "This request appears to violate our Usage Policy"}],
        },
    }


@pytest.fixture
def store(tmp_path: Path) -> ConversationStore:
    return ConversationStore(tmp_path / "forkline.db")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        data_dir=str(tmp_path / "data"),
        approval_timeout_seconds=5.0,
    )


@pytest.fixture
def snapshots() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_orchestrator(store, snapshots, config):
    """Build an orchestrator around a provider with an online API-key selector."""

    def _make(
        provider: Provider,
        *,
        online: bool = True,
        fallback_models: list[str] | None = None,
        credential: Credential | None = Credential(ConnectionMethod.API_KEY, "sk-test"),
        sleep=None,
        **selector_kwargs,
    ) -> SessionOrchestrator:
        selector = EngineSelector(
            StaticCredentials(credential),
            StaticConnectivity(online),
            StaticCatalog(fallback_models),
            **selector_kwargs,
        )
        kwargs = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        return SessionOrchestrator(
            store, selector, provider, snapshots=snapshots, config=config, **kwargs,
        )

    return _make


@pytest.fixture
def thread_and_sub(store, workspace):
    thread = store.create_thread(name="t", workspace_path=str(workspace))
    sub = store.create_sub_conversation(thread.id, name="main")
    return thread, sub
