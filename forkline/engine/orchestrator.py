"""Session orchestrator: one streaming exchange per sub-conversation.

The orchestrator owns the registry of active executions. Each call to
``stream_exchange`` returns a lazy ``Exchange``; iterating it starts a
background producer that loads history, selects an engine, streams the
engine's events through the transformer and, on every exit path, writes
the assistant message before the final ``finish`` chunk.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from forkline.engine.approvals import ToolApprovalRendezvous
from forkline.engine.chunks import (
    AuthErrorChunk,
    Chunk,
    ErrorChunk,
    Finish,
    MessageMetadataChunk,
)
from forkline.engine.config import EngineConfig
from forkline.engine.conversation_store import ConversationStore, part_to_dict
from forkline.engine.errors import (
    ConfigurationError,
    EngineProtocolError,
    ErrorCategory,
    NormalizedError,
    TransportError,
    classify_engine_error,
    classify_transport_error,
)
from forkline.engine.models import (
    ActiveExecution,
    Attachment,
    CancellationToken,
    ConversationMode,
    CustomEngineConfig,
    Message,
    MessageRole,
    ResumeDirective,
    TextPart,
)
from forkline.engine.offline import build_fallback_prompt
from forkline.engine.policy import ToolPolicyGate
from forkline.engine.prompts import (
    build_system_prompt,
    build_user_content,
    parse_mentions,
    read_agents_md,
)
from forkline.engine.providers.base import EngineRequest, Provider
from forkline.engine.providers.env import build_engine_env
from forkline.engine.selector import EngineSelection, EngineSelector
from forkline.engine.transform import MessageBuilder, StreamTransformer

logger = logging.getLogger(__name__)

RESUME_FLAGS = ("should_resume", "should_fork_resume")
SESSION_CANCELLED = "Session cancelled."
SESSION_ENDED = "Session ended."

# How long a new exchange waits for the one it superseded to finish persisting.
_SUPERSEDE_WAIT_SECONDS = 10.0

_END = object()
_CANCELLED = object()
_CLOSED = object()


def derive_resume_directive(
    session_id: str | None,
    messages: list[Message],
) -> ResumeDirective:
    """Engine addressing from the session pointer and the last assistant message."""
    if not session_id:
        return ResumeDirective.fresh()
    last_assistant = next(
        (m for m in reversed(messages) if m.role == MessageRole.ASSISTANT), None,
    )
    metadata = last_assistant.metadata if last_assistant is not None else {}
    at_uuid = metadata.get("sdk_message_uuid")
    if metadata.get("should_fork_resume") and at_uuid:
        return ResumeDirective.fork(session_id, at_uuid)
    if metadata.get("should_resume") and at_uuid:
        return ResumeDirective.rollback(session_id, at_uuid)
    return ResumeDirective.continue_session(session_id)


def consume_resume_flags(messages: list[Message]) -> bool:
    """Strip rollback/fork flags from every message. Returns True if any were set."""
    changed = False
    for msg in messages:
        for flag in RESUME_FLAGS:
            if flag in msg.metadata:
                del msg.metadata[flag]
                changed = True
    return changed


def is_duplicate_prompt(
    messages: list[Message],
    prompt: str,
    attachment_parts: list[Any],
) -> bool:
    if not messages:
        return False
    last = messages[-1]
    if last.role != MessageRole.USER or last.first_text() != prompt:
        return False
    existing = [part_to_dict(p) for p in last.attachment_parts()]
    return existing == [part_to_dict(p) for p in attachment_parts]


def error_chunk_for(error: NormalizedError) -> Chunk:
    if error.is_auth:
        return AuthErrorChunk(error_text=error.message)
    return ErrorChunk(
        error_text=error.message,
        category=error.category.value,
        debug_context=dict(error.debug_context),
    )


@dataclass
class ExchangeParams:
    sub_conversation_id: str
    thread_id: str
    prompt: str
    attachments: list[Attachment] = field(default_factory=list)
    resume_directive: ResumeDirective | None = None
    history_enabled: bool = True
    offline_mode_enabled: bool = False
    custom_config: CustomEngineConfig | None = None
    model: str | None = None
    max_thinking_tokens: int | None = None


@dataclass
class _AttemptState:
    """Accumulation state for one engine attempt."""
    transformer: StreamTransformer
    builder: MessageBuilder
    event_count: int = 0
    last_assistant_uuid: str | None = None
    stderr_lines: list[str] = field(default_factory=list)
    pending_finish: Finish | None = None
    error_emitted: bool = False
    session_expired: bool = False
    task_cancelled: bool = False

    @property
    def stderr(self) -> str:
        return "\n".join(line.rstrip("\n") for line in self.stderr_lines)


class Exchange:
    """Lazy, finite async iterator over one exchange's chunks.

    The producer starts on first iteration. Closing the iterator before
    it is exhausted ends the exchange as if the session had gone away.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        params: ExchangeParams,
        queue_size: int,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.params = params
        self.token = CancellationToken()
        self._orchestrator = orchestrator
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._task: asyncio.Task | None = None
        self._started = False
        self._finished = False
        self._consumer_closed = False

    @property
    def sub_conversation_id(self) -> str:
        return self.params.sub_conversation_id

    @property
    def started(self) -> bool:
        return self._started

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def __aiter__(self) -> Exchange:
        return self

    async def __anext__(self) -> Chunk:
        if self._finished:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            if self.token.cancelled:
                self._finished = True
                raise StopAsyncIteration
            self._task = self._orchestrator._launch(self)
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def cancel(self, reason: str = SESSION_CANCELLED) -> None:
        self._orchestrator._cancel_exchange(self, reason)

    async def aclose(self) -> None:
        """Consumer is going away: cancel, then let the producer persist."""
        if self._finished:
            return
        self._finished = True
        self._consumer_closed = True
        if self._task is None:
            self.token.cancel(SESSION_ENDED)
            return
        if not self.token.cancelled:
            self._orchestrator._cancel_exchange(self, SESSION_ENDED)
        while not self._queue.empty():
            self._queue.get_nowait()
        await asyncio.shield(self._task)

    async def emit(self, chunk: Chunk) -> None:
        if self._consumer_closed:
            return
        await self._queue.put(chunk)

    def _close_queue(self) -> None:
        if self._consumer_closed:
            return
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Consumer still draining; hand the sentinel over asynchronously.
            asyncio.ensure_future(self._queue.put(_CLOSED))

    async def collect(self) -> list[Chunk]:
        """Drain the whole exchange into a list."""
        return [chunk async for chunk in self]


class SessionOrchestrator:
    """Runs exchanges against the engine and owns the active-execution registry."""

    def __init__(
        self,
        store: ConversationStore,
        selector: EngineSelector,
        provider: Provider,
        *,
        snapshots: Any | None = None,
        config: EngineConfig | None = None,
        rendezvous: ToolApprovalRendezvous | None = None,
        fallback_provider: Provider | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._selector = selector
        self._provider = provider
        self._fallback_provider = fallback_provider or provider
        self._snapshots = snapshots
        self._config = config or EngineConfig()
        self._rendezvous = rendezvous or ToolApprovalRendezvous(
            self._config.approval_timeout_seconds
        )
        self._active: dict[str, ActiveExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # Latest producer per sub-conversation; outlives its ActiveExecution
        # until the final write is done.
        self._producers: dict[str, asyncio.Task] = {}
        self._sleep = sleep

    @property
    def rendezvous(self) -> ToolApprovalRendezvous:
        return self._rendezvous

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ── Public surface ──

    def stream_exchange(
        self,
        sub_conversation_id: str,
        thread_id: str,
        prompt: str,
        attachments: list[Attachment] | None = None,
        resume_directive: ResumeDirective | None = None,
        *,
        history_enabled: bool | None = None,
        offline_mode_enabled: bool | None = None,
        custom_config: CustomEngineConfig | None = None,
        model: str | None = None,
        max_thinking_tokens: int | None = None,
    ) -> Exchange:
        params = ExchangeParams(
            sub_conversation_id=sub_conversation_id,
            thread_id=thread_id,
            prompt=prompt,
            attachments=list(attachments or []),
            resume_directive=resume_directive,
            history_enabled=(
                self._config.history_enabled if history_enabled is None else history_enabled
            ),
            offline_mode_enabled=(
                self._config.offline_mode_enabled
                if offline_mode_enabled is None else offline_mode_enabled
            ),
            custom_config=custom_config,
            model=model,
            max_thinking_tokens=max_thinking_tokens,
        )
        return Exchange(self, params, self._config.chunk_queue_size)

    def cancel(self, sub_conversation_id: str) -> bool:
        """Cancel the active exchange of a sub-conversation, if any."""
        execution = self._active.pop(sub_conversation_id, None)
        self._rendezvous.clear(SESSION_CANCELLED, sub_conversation_id)
        if execution is None:
            return False
        logger.info(
            "Cancelling exchange %s for %s",
            execution.exchange_id[:8], sub_conversation_id[:8],
        )
        execution.token.cancel(SESSION_CANCELLED)
        return True

    def respond_tool_approval(
        self,
        call_id: str,
        approved: bool,
        message: str | None = None,
        updated_input: Any = None,
    ) -> bool:
        return self._rendezvous.respond(call_id, approved, message, updated_input)

    def is_active(self, sub_conversation_id: str) -> bool:
        return sub_conversation_id in self._active

    def is_busy(self, sub_conversation_id: str) -> bool:
        """True while an exchange is active or a cancelled one is still persisting."""
        if sub_conversation_id in self._active:
            return True
        producer = self._producers.get(sub_conversation_id)
        return producer is not None and not producer.done()

    async def shutdown(self) -> None:
        """Cancel every active exchange and wait for their producers to persist."""
        for sub_id in list(self._active):
            self.cancel(sub_id)
        self._rendezvous.clear(SESSION_CANCELLED)
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            logger.info("Waiting for %d exchange(s) to finish", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Registry ──

    def _launch(self, exchange: Exchange) -> asyncio.Task:
        sub_id = exchange.sub_conversation_id
        previous = self._active.get(sub_id)
        if previous is not None:
            logger.info(
                "Superseding exchange %s for %s",
                previous.exchange_id[:8], sub_id[:8],
            )
            previous.token.cancel(SESSION_CANCELLED)
            self._rendezvous.clear(SESSION_CANCELLED, sub_id)

        previous_task = self._producers.get(sub_id)
        if previous_task is not None and previous_task.done():
            previous_task = None

        execution = ActiveExecution(
            sub_conversation_id=sub_id,
            token=exchange.token,
            exchange_id=exchange.id,
        )
        self._active[sub_id] = execution
        task = asyncio.ensure_future(self._produce(exchange, execution, previous_task))
        self._tasks[exchange.id] = task
        task.add_done_callback(lambda _t, eid=exchange.id: self._tasks.pop(eid, None))
        self._producers[sub_id] = task
        task.add_done_callback(lambda t, sid=sub_id: self._forget_producer(sid, t))
        return task

    def _forget_producer(self, sub_id: str, task: asyncio.Task) -> None:
        if self._producers.get(sub_id) is task:
            del self._producers[sub_id]

    def _unregister(self, execution: ActiveExecution) -> None:
        current = self._active.get(execution.sub_conversation_id)
        if current is execution:
            del self._active[execution.sub_conversation_id]

    def _cancel_exchange(self, exchange: Exchange, reason: str) -> None:
        sub_id = exchange.sub_conversation_id
        current = self._active.get(sub_id)
        if current is not None and current.exchange_id == exchange.id:
            del self._active[sub_id]
            self._rendezvous.clear(reason, sub_id)
        exchange.token.cancel(reason)

    # ── Producer ──

    async def _produce(
        self,
        exchange: Exchange,
        execution: ActiveExecution,
        previous_task: asyncio.Task | None,
    ) -> None:
        sub_id = exchange.sub_conversation_id
        try:
            if previous_task is not None and not previous_task.done():
                await asyncio.wait({previous_task}, timeout=_SUPERSEDE_WAIT_SECONDS)
                if not previous_task.done():
                    logger.warning(
                        "Previous exchange for %s still writing after %.0fs; continuing",
                        sub_id[:8], _SUPERSEDE_WAIT_SECONDS,
                    )
            await self._run_exchange(exchange)
        except Exception as exc:
            logger.exception("Unexpected error in exchange for %s", sub_id[:8])
            await exchange.emit(ErrorChunk(
                error_text=f"Unexpected error: {exc}",
                category=ErrorCategory.UNKNOWN.value,
            ))
            await exchange.emit(Finish())
        finally:
            self._unregister(execution)
            exchange._close_queue()

    async def _run_exchange(self, exchange: Exchange) -> None:
        params = exchange.params
        token = exchange.token
        emit = exchange.emit
        sub_id = params.sub_conversation_id

        sub = self._store.get_sub_conversation(sub_id)
        if sub is None:
            await emit(ErrorChunk(
                error_text=f"Sub-conversation {sub_id} not found",
                category=ErrorCategory.CONFIGURATION.value,
            ))
            await emit(Finish())
            return
        thread = self._store.get_thread(params.thread_id)
        cwd = thread.workspace_path if thread is not None else None

        messages = list(sub.messages)
        attachment_parts = [a.to_part() for a in params.attachments]
        if is_duplicate_prompt(messages, params.prompt, attachment_parts):
            logger.info("Prompt already stored for %s; not re-appending", sub_id[:8])
        else:
            messages.append(Message(
                role=MessageRole.USER,
                parts=[TextPart(text=params.prompt), *attachment_parts],
            ))

        directive = params.resume_directive or derive_resume_directive(sub.session_id, messages)
        consume_resume_flags(messages)
        self._store.update_sub_conversation(sub_id, messages=messages, stream_id=exchange.id)
        logger.info(
            "Exchange %s start sub=%s mode=%s resume=%s",
            exchange.id[:8], sub_id[:8], sub.mode.value, directive.kind.value,
        )

        try:
            selection = await self._selector.select(
                custom_config=params.custom_config,
                offline_mode_enabled=params.offline_mode_enabled,
                model=params.model or self._config.default_model,
            )
        except ConfigurationError as exc:
            logger.warning("Engine selection failed for %s: %s", sub_id[:8], exc.reason)
            await emit(error_chunk_for(exc.normalize()))
            self._store.update_sub_conversation(sub_id, stream_id=None)
            await emit(Finish())
            return

        if token.cancelled:
            self._store.update_sub_conversation(sub_id, stream_id=None)
            await emit(Finish())
            return

        request = self._build_request(params, sub.mode, selection, directive, messages, cwd)
        provider = self._fallback_provider if selection.is_fallback else self._provider

        state = await self._run_attempts(
            exchange, provider, request, selection, sub.mode,
        )

        if state.event_count == 0 and not token.cancelled and not state.error_emitted:
            await emit(ErrorChunk(
                error_text="Empty response: No response received from the engine",
                category=ErrorCategory.EMPTY_RESPONSE.value,
            ))

        await self._persist(params, state, messages, cwd, fallback=selection.is_fallback)
        if state.task_cancelled:
            raise asyncio.CancelledError()
        await emit(state.pending_finish or Finish())

    async def _run_attempts(
        self,
        exchange: Exchange,
        provider: Provider,
        request: EngineRequest,
        selection: EngineSelection,
        mode: ConversationMode,
    ) -> _AttemptState:
        params = exchange.params
        token = exchange.token
        attempt = 0
        while True:
            state = _AttemptState(
                transformer=StreamTransformer(),
                builder=MessageBuilder(),
            )
            state.builder.merge_metadata({
                "connection_method": selection.connection_method.value,
                "model": request.model,
            })
            request.stderr = state.stderr_lines.append
            request.can_use_tool = self._tool_callback(exchange, state, mode, selection)

            try:
                await self._stream_attempt(exchange, provider, request, state)
            except EngineProtocolError as exc:
                if (
                    exc.error.is_retryable
                    and attempt < self._config.max_policy_retries
                    and not token.cancelled
                ):
                    attempt += 1
                    delay = self._config.retry_delay(attempt)
                    logger.warning(
                        "Policy rejection for %s, retry %d/%d in %.0fs",
                        params.sub_conversation_id[:8], attempt,
                        self._config.max_policy_retries, delay,
                    )
                    if await self._wait_or_cancelled(token, delay):
                        return state
                    continue
                logger.error(
                    "Engine error for %s: %s", params.sub_conversation_id[:8], exc,
                )
                await exchange.emit(error_chunk_for(exc.error))
                state.error_emitted = True
            except asyncio.CancelledError:
                # The producer task itself was cancelled; persist first, re-raise after.
                token.cancel(SESSION_CANCELLED)
                state.task_cancelled = True
            except Exception as exc:
                if isinstance(exc, TransportError):
                    error = exc.error
                else:
                    error = classify_transport_error(exc, state.stderr)
                logger.error(
                    "Engine stream failed for %s (%s): %s",
                    params.sub_conversation_id[:8], error.category.value, exc,
                )
                if error.category == ErrorCategory.SESSION_EXPIRED and not selection.is_fallback:
                    state.session_expired = True
                    self._store.update_sub_conversation(
                        params.sub_conversation_id, session_id=None,
                    )
                if not token.cancelled:
                    await exchange.emit(error_chunk_for(error))
                    state.error_emitted = True
            return state

    async def _stream_attempt(
        self,
        exchange: Exchange,
        provider: Provider,
        request: EngineRequest,
        state: _AttemptState,
    ) -> None:
        token = exchange.token
        history_enabled = exchange.params.history_enabled
        events = provider.run(request, token).__aiter__()
        try:
            while True:
                event = await self._next_event(events, token)
                if event is _END or event is _CANCELLED or token.cancelled:
                    break
                state.event_count += 1

                if event.get("type") == "error" or event.get("error"):
                    raise EngineProtocolError(classify_engine_error(event))

                if event.get("session_id"):
                    state.builder.merge_metadata({"session_id": event["session_id"]})
                if event.get("type") == "assistant" and event.get("uuid"):
                    state.last_assistant_uuid = event["uuid"]
                if (
                    event.get("type") == "result"
                    and history_enabled
                    and state.last_assistant_uuid
                    and not token.cancelled
                ):
                    state.builder.merge_metadata(
                        {"sdk_message_uuid": state.last_assistant_uuid}
                    )

                for chunk in state.transformer.transform(event):
                    if isinstance(chunk, MessageMetadataChunk):
                        sdk_uuid = state.builder.metadata.get("sdk_message_uuid")
                        if sdk_uuid:
                            chunk.metadata = {**chunk.metadata, "sdk_message_uuid": sdk_uuid}
                    if isinstance(chunk, Finish):
                        # Held back until the assistant message is written.
                        state.pending_finish = chunk
                        continue
                    state.builder.apply(chunk)
                    await exchange.emit(chunk)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _next_event(self, events: AsyncIterator[dict], token: CancellationToken) -> Any:
        """Next engine event, or a sentinel for end-of-stream / cancellation."""
        next_task = asyncio.ensure_future(events.__anext__())
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # The stream cannot be closed while __anext__ is still running.
            next_task.cancel()
            await asyncio.gather(next_task, return_exceptions=True)
            raise
        finally:
            cancel_task.cancel()
        if next_task in done:
            try:
                return next_task.result()
            except StopAsyncIteration:
                return _END
        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as exc:
            logger.debug("Engine stream raised while cancelling: %s", exc)
        return _CANCELLED

    async def _wait_or_cancelled(self, token: CancellationToken, delay: float) -> bool:
        """Sleep for ``delay`` unless cancelled first. Returns True if cancelled."""
        sleep_task = asyncio.ensure_future(self._sleep(delay))
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait(
                {sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            sleep_task.cancel()
            cancel_task.cancel()
        return token.cancelled

    def _tool_callback(
        self,
        exchange: Exchange,
        state: _AttemptState,
        mode: ConversationMode,
        selection: EngineSelection,
    ):
        async def gate_emit(chunk: Chunk) -> None:
            state.builder.apply(chunk)
            await exchange.emit(chunk)

        gate = ToolPolicyGate(
            mode,
            exchange.sub_conversation_id,
            self._rendezvous,
            gate_emit,
            fallback=selection.is_fallback,
        )

        async def can_use_tool(tool_name: str, tool_input: dict, call_id: str | None):
            if not call_id:
                part = state.builder.latest_calling(tool_name)
                call_id = part.call_id if part is not None else str(uuid.uuid4())
            return await gate.decide(tool_name, tool_input, call_id)

        return can_use_tool

    def _build_request(
        self,
        params: ExchangeParams,
        mode: ConversationMode,
        selection: EngineSelection,
        directive: ResumeDirective,
        messages: list[Message],
        cwd: str | None,
    ) -> EngineRequest:
        parsed = parse_mentions(params.prompt)
        agents_md = read_agents_md(cwd)
        model = selection.model or params.model or self._config.default_model
        config_dir = None

        if selection.is_fallback:
            config_dir = Path(self._config.data_dir) / "engine-sessions" / params.thread_id
            prompt_text = build_fallback_prompt(
                parsed.text,
                history=messages[:-1],
                cwd=cwd,
                model=model,
                agents_md=agents_md,
                char_budget=self._config.fallback_history_char_budget,
            )
            # The local engine has no server-side session to resume.
            directive = ResumeDirective.fresh()
            system_prompt = None
            setting_sources = None
        else:
            prompt_text = parsed.text
            system_prompt = build_system_prompt(agents_md)
            setting_sources = ["project", "user"]

        return EngineRequest(
            prompt=build_user_content(prompt_text, params.attachments),
            cwd=cwd,
            system_prompt=system_prompt,
            resume=directive,
            env=build_engine_env(
                credential=selection.credential,
                base_url=selection.base_url,
                config_dir=config_dir,
            ),
            model=model,
            permission_mode="plan" if mode == ConversationMode.PLAN else "bypassPermissions",
            max_thinking_tokens=params.max_thinking_tokens,
            setting_sources=setting_sources,
            cli_path=self._config.cli_path,
        )

    async def _persist(
        self,
        params: ExchangeParams,
        state: _AttemptState,
        messages: list[Message],
        cwd: str | None,
        *,
        fallback: bool = False,
    ) -> None:
        sub_id = params.sub_conversation_id
        parts = state.builder.build()
        metadata = dict(state.builder.metadata)

        updates: dict[str, Any] = {"stream_id": None}
        session_id = metadata.get("session_id")
        # Local fallback sessions are never resumed; keep the remote pointer.
        if session_id and not state.session_expired and not fallback:
            updates["session_id"] = session_id
        if parts:
            messages.append(Message(role=MessageRole.ASSISTANT, parts=parts, metadata=metadata))
            updates["messages"] = messages
        self._store.update_sub_conversation(sub_id, **updates)
        self._store.touch_thread(params.thread_id)
        logger.info(
            "Exchange for %s persisted parts=%d events=%d",
            sub_id[:8], len(parts), state.event_count,
        )

        sdk_uuid = metadata.get("sdk_message_uuid")
        if params.history_enabled and sdk_uuid and cwd and self._snapshots is not None:
            try:
                await asyncio.to_thread(self._snapshots.create, cwd, sdk_uuid)
            except Exception:
                logger.exception(
                    "Failed to create rollback snapshot %s for %s",
                    sdk_uuid[:8], Path(cwd).name,
                )
