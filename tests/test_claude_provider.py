from __future__ import annotations

from types import SimpleNamespace

import pytest

from forkline.engine.errors import ErrorCategory, TransportError
from forkline.engine.models import CancellationToken, ResumeDirective
from forkline.engine.policy import PolicyAllow, PolicyDeny
from forkline.engine.providers import ClaudeProvider
from forkline.engine.providers.base import EngineRequest
from forkline.engine.providers.claude_provider import sdk_message_to_event


# Stand-ins named like the SDK's message classes; conversion keys off the class name.
class StreamEvent(SimpleNamespace):
    pass


class SystemMessage(SimpleNamespace):
    pass


class ResultMessage(SimpleNamespace):
    pass


class AssistantMessage(SimpleNamespace):
    pass


class UserMessage(SimpleNamespace):
    pass


def test_stream_event_conversion() -> None:
    event = sdk_message_to_event(StreamEvent(
        uuid="u", session_id="s", parent_tool_use_id=None,
        event={"type": "message_start"},
    ))
    assert event == {
        "type": "stream_event",
        "event": {"type": "message_start"},
        "uuid": "u",
        "session_id": "s",
        "parent_tool_use_id": None,
    }


def test_system_message_flattens_data() -> None:
    event = sdk_message_to_event(SystemMessage(
        subtype="init", data={"type": "system", "session_id": "s", "model": "m"},
    ))
    assert event == {"type": "system", "subtype": "init", "session_id": "s", "model": "m"}


def test_assistant_message_blocks_and_error() -> None:
    event = sdk_message_to_event(AssistantMessage(
        uuid="a1",
        model="claude",
        parent_tool_use_id=None,
        error="rate_limit",
        content=[
            SimpleNamespace(text="hi"),
            SimpleNamespace(thinking="hmm", signature="x"),
            SimpleNamespace(id="t1", name="Read", input={"file_path": "a"}),
        ],
    ))
    assert event["type"] == "assistant"
    assert event["uuid"] == "a1"
    assert event["error"] == "rate_limit"
    assert event["message"]["content"] == [
        {"type": "text", "text": "hi"},
        {"type": "thinking", "thinking": "hmm"},
        {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a"}},
    ]


def test_user_message_tool_results() -> None:
    event = sdk_message_to_event(UserMessage(
        content=[SimpleNamespace(tool_use_id="t1", content="ok", is_error=None)],
        tool_use_result={"stdout": "ok"},
    ))
    assert event["type"] == "user"
    assert event["message"]["content"] == [
        {"type": "tool_result", "tool_use_id": "t1", "content": "ok", "is_error": False},
    ]
    assert event["tool_use_result"] == {"stdout": "ok"}


def test_result_message_conversion() -> None:
    event = sdk_message_to_event(ResultMessage(
        subtype="success", is_error=False, duration_ms=10, total_cost_usd=0.5,
        usage={"input_tokens": 1}, session_id="s", result="done",
    ))
    assert event["type"] == "result"
    assert event["total_cost_usd"] == 0.5
    assert event["usage"] == {"input_tokens": 1}
    assert event["model_usage"] is None


def test_dict_messages_pass_through() -> None:
    raw = {"type": "result"}
    assert sdk_message_to_event(raw) is raw


@pytest.mark.parametrize("directive,expected", [
    (ResumeDirective.fresh(), {}),
    (ResumeDirective.continue_session("s"), {"resume": "s"}),
    (
        ResumeDirective.rollback("s", "u"),
        {"resume": "s", "extra_args": {"resume-session-at": "u"}},
    ),
    (
        ResumeDirective.fork("s", "u"),
        {"resume": "s", "extra_args": {"resume-session-at": "u"}, "fork_session": True},
    ),
])
def test_resume_directive_options(directive, expected) -> None:
    kwargs = ClaudeProvider().build_options_kwargs(EngineRequest(prompt="hi", resume=directive))
    resume_keys = {k: v for k, v in kwargs.items() if k in ("resume", "extra_args", "fork_session")}
    assert resume_keys == expected


def test_build_options_kwargs_carries_request_fields() -> None:
    request = EngineRequest(
        prompt="hi",
        cwd="/work",
        system_prompt={"type": "preset", "preset": "claude_code"},
        env={"A": "1"},
        model="opus",
        permission_mode="plan",
        max_thinking_tokens=2048,
        setting_sources=["project", "user"],
        cli_path="/opt/claude",
        stderr=print,
    )
    kwargs = ClaudeProvider().build_options_kwargs(request)
    assert kwargs["cwd"] == "/work"
    assert kwargs["permission_mode"] == "plan"
    assert kwargs["include_partial_messages"] is True
    assert kwargs["env"] == {"A": "1"}
    assert kwargs["model"] == "opus"
    assert kwargs["max_thinking_tokens"] == 2048
    assert kwargs["setting_sources"] == ["project", "user"]
    assert kwargs["cli_path"] == "/opt/claude"
    assert kwargs["stderr"] is print


@pytest.mark.asyncio
async def test_run_streams_events_and_wraps_tool_callback(monkeypatch) -> None:
    import claude_agent_sdk
    from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

    captured = {}

    async def gate(tool_name, tool_input, call_id):
        captured.setdefault("calls", []).append((tool_name, call_id))
        if tool_name == "Bash":
            return PolicyDeny("no shell")
        return PolicyAllow(updated_input=tool_input)

    async def fake_query(*, prompt, options):
        async for message in prompt:
            captured["prompt"] = message
        captured["allow"] = await options.can_use_tool(
            "Read", {"file_path": "a"}, SimpleNamespace(tool_use_id="t1"),
        )
        captured["deny"] = await options.can_use_tool(
            "Bash", {"command": "ls"}, SimpleNamespace(tool_use_id="t2"),
        )
        yield StreamEvent(event={"type": "message_start"}, session_id="s")
        yield ResultMessage(subtype="success", total_cost_usd=0.0, session_id="s")

    monkeypatch.setattr(claude_agent_sdk, "query", fake_query)
    request = EngineRequest(prompt="hello", can_use_tool=gate)

    events = [e async for e in ClaudeProvider().run(request, CancellationToken())]

    assert [e["type"] for e in events] == ["stream_event", "result"]
    assert captured["prompt"]["message"] == {"role": "user", "content": "hello"}
    assert captured["calls"] == [("Read", "t1"), ("Bash", "t2")]
    assert isinstance(captured["allow"], PermissionResultAllow)
    assert captured["allow"].updated_input == {"file_path": "a"}
    assert isinstance(captured["deny"], PermissionResultDeny)
    assert captured["deny"].message == "no shell"


@pytest.mark.asyncio
async def test_run_stops_when_aborted(monkeypatch) -> None:
    import claude_agent_sdk

    token = CancellationToken()

    async def fake_query(*, prompt, options):
        yield StreamEvent(event={"type": "message_start"})
        token.cancel()
        yield StreamEvent(event={"type": "content_block_stop"})

    monkeypatch.setattr(claude_agent_sdk, "query", fake_query)

    events = [e async for e in ClaudeProvider().run(EngineRequest(prompt="x"), token)]
    assert len(events) == 1


@pytest.mark.asyncio
async def test_run_wraps_missing_cli_as_transport_error(monkeypatch) -> None:
    import claude_agent_sdk

    async def fake_query(*, prompt, options):
        raise claude_agent_sdk.CLINotFoundError("Claude Code not found")
        yield  # pragma: no cover

    monkeypatch.setattr(claude_agent_sdk, "query", fake_query)

    with pytest.raises(TransportError) as excinfo:
        async for _ in ClaudeProvider().run(EngineRequest(prompt="x"), CancellationToken()):
            pass
    assert excinfo.value.error.category == ErrorCategory.EXECUTABLE_NOT_FOUND
    assert isinstance(excinfo.value.cause, claude_agent_sdk.CLINotFoundError)
