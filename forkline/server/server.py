"""HTTP + SSE server exposing threads, sub-conversations and exchanges.

Thin adapter: all exchange state lives in SessionOrchestrator and the
conversation store. This module only handles HTTP routing, request
parsing and streaming chunks as Server-Sent Events.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from forkline.engine.chunks import chunk_to_dict
from forkline.engine.conversation_store import ConversationStore, message_to_dict
from forkline.engine.models import (
    Attachment,
    ConversationMode,
    CustomEngineConfig,
    SubConversation,
    Thread,
)
from forkline.engine.orchestrator import SessionOrchestrator
from forkline.shared.services.history import HistoryService

logger = logging.getLogger(__name__)


def thread_to_dict(thread: Thread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "name": thread.name,
        "workspace_path": thread.workspace_path,
        "created_at": thread.created_at.isoformat() if thread.created_at else None,
        "updated_at": thread.updated_at.isoformat() if thread.updated_at else None,
        "archived_at": thread.archived_at.isoformat() if thread.archived_at else None,
    }


def sub_to_dict(sub: SubConversation, *, include_messages: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": sub.id,
        "thread_id": sub.thread_id,
        "name": sub.name,
        "mode": sub.mode.value,
        "session_id": sub.session_id,
        "stream_id": sub.stream_id,
        "created_at": sub.created_at.isoformat() if sub.created_at else None,
        "updated_at": sub.updated_at.isoformat() if sub.updated_at else None,
    }
    if include_messages:
        data["messages"] = [message_to_dict(m) for m in sub.messages]
    return data


def _parse_attachments(raw: Any) -> list[Attachment]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValueError("attachments must be a list")
    attachments = []
    for item in raw:
        if not isinstance(item, dict) or "kind" not in item or "media_type" not in item:
            raise ValueError("each attachment needs kind and media_type")
        attachments.append(Attachment(
            kind=item["kind"],
            media_type=item["media_type"],
            data=item.get("data"),
            path=item.get("path"),
            filename=item.get("filename"),
        ))
    return attachments


def _parse_custom_config(raw: Any) -> CustomEngineConfig | None:
    if not raw:
        return None
    if not isinstance(raw, dict) or not raw.get("model") or not raw.get("token"):
        raise ValueError("custom_config needs model and token")
    return CustomEngineConfig(
        model=raw["model"], token=raw["token"], base_url=raw.get("base_url"),
    )


def _sse_frame(event: str, data: dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode()


class ForklineServer:
    """HTTP + SSE front end for one orchestrator."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        store: ConversationStore,
        history: HistoryService,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._history = history
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info(
            "ForklineServer init host=%s port=%s db=%s pid=%s",
            self._host, self._port, store.db_path, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-forkline-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Threads
        r.add_get("/threads", self._handle_list_threads)
        r.add_post("/threads", self._handle_create_thread)
        r.add_post("/threads/{id}/archive", self._handle_archive_thread)
        r.add_get("/threads/{id}/subs", self._handle_list_subs)
        r.add_post("/threads/{id}/subs", self._handle_create_sub)
        # Sub-conversations
        r.add_get("/subs/{id}", self._handle_get_sub)
        r.add_patch("/subs/{id}", self._handle_update_sub)
        r.add_delete("/subs/{id}", self._handle_delete_sub)
        r.add_post("/subs/{id}/rollback", self._handle_rollback)
        r.add_post("/subs/{id}/fork", self._handle_fork)
        # Exchanges
        r.add_post("/subs/{id}/exchange", self._handle_exchange)
        r.add_post("/subs/{id}/cancel", self._handle_cancel)
        r.add_post("/approvals/{call_id}", self._handle_resolve_approval)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Forkline server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Forkline server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._orchestrator.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    def _require_sub(self, request: web.Request) -> tuple[SubConversation | None, web.Response | None]:
        sub_id = request.match_info["id"]
        sub = self._store.get_sub_conversation(sub_id)
        if sub is None:
            return None, web.json_response(
                {"error": f"Sub-conversation {sub_id} not found"}, status=404,
            )
        return sub, None

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Invalid JSON: {exc}"}),
                content_type="application/json",
            )
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Body must be a JSON object"}),
                content_type="application/json",
            )
        return body

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_list_threads(self, request: web.Request) -> web.Response:
        include_archived = request.query.get("archived", "0").lower() in {"1", "true", "yes"}
        threads = self._store.list_threads(include_archived=include_archived)
        return web.json_response({"threads": [thread_to_dict(t) for t in threads]})

    async def _handle_create_thread(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        try:
            mode = ConversationMode(body.get("mode", ConversationMode.AGENT.value))
        except ValueError:
            return web.json_response({"error": "mode must be plan or agent"}, status=400)
        thread = self._store.create_thread(
            name=body.get("name"), workspace_path=body.get("workspace_path"),
        )
        sub = self._store.create_sub_conversation(thread.id, name=body.get("sub_name"), mode=mode)
        return web.json_response(
            {"thread": thread_to_dict(thread), "sub_conversation": sub_to_dict(sub)},
            status=201,
        )

    async def _handle_archive_thread(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        if not self._history.archive_thread(thread_id):
            return web.json_response({"error": f"Thread {thread_id} not found"}, status=404)
        return web.json_response({"status": "archived"})

    async def _handle_list_subs(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        if self._store.get_thread(thread_id) is None:
            return web.json_response({"error": f"Thread {thread_id} not found"}, status=404)
        subs = self._store.list_sub_conversations(thread_id)
        return web.json_response({
            "sub_conversations": [
                {**sub_to_dict(s, include_messages=False), "active": self._orchestrator.is_active(s.id)}
                for s in subs
            ],
        })

    async def _handle_create_sub(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["id"]
        if self._store.get_thread(thread_id) is None:
            return web.json_response({"error": f"Thread {thread_id} not found"}, status=404)
        body = await self._json_body(request)
        try:
            mode = ConversationMode(body.get("mode", ConversationMode.AGENT.value))
        except ValueError:
            return web.json_response({"error": "mode must be plan or agent"}, status=400)
        sub = self._store.create_sub_conversation(thread_id, name=body.get("name"), mode=mode)
        return web.json_response({"sub_conversation": sub_to_dict(sub)}, status=201)

    async def _handle_get_sub(self, request: web.Request) -> web.Response:
        sub, err = self._require_sub(request)
        if err:
            return err
        return web.json_response({
            "sub_conversation": sub_to_dict(sub),
            "active": self._orchestrator.is_active(sub.id),
        })

    async def _handle_update_sub(self, request: web.Request) -> web.Response:
        sub, err = self._require_sub(request)
        if err:
            return err
        body = await self._json_body(request)
        if "name" in body:
            name = str(body["name"] or "").strip()
            if not name:
                return web.json_response({"error": "Name is required"}, status=400)
            self._history.rename(sub.id, name)
        if "mode" in body:
            try:
                self._history.set_mode(sub.id, body["mode"])
            except ValueError:
                return web.json_response({"error": "mode must be plan or agent"}, status=400)
        updated = self._store.get_sub_conversation(sub.id)
        return web.json_response({"sub_conversation": sub_to_dict(updated, include_messages=False)})

    async def _handle_delete_sub(self, request: web.Request) -> web.Response:
        sub, err = self._require_sub(request)
        if err:
            return err
        self._orchestrator.cancel(sub.id)
        self._store.delete_sub_conversation(sub.id)
        return web.json_response({"status": "removed"})

    async def _handle_rollback(self, request: web.Request) -> web.Response:
        sub, err = self._require_sub(request)
        if err:
            return err
        if self._orchestrator.is_busy(sub.id):
            return web.json_response({"error": "An exchange is in progress"}, status=409)
        body = await self._json_body(request)
        target = body.get("sdk_message_uuid")
        if not target:
            return web.json_response({"error": "sdk_message_uuid is required"}, status=400)
        result = await asyncio.to_thread(self._history.rollback_to_message, sub.id, target)
        if not result.success:
            return web.json_response({"success": False, "error": result.error}, status=409)
        return web.json_response({
            "success": True,
            "messages": [message_to_dict(m) for m in result.messages],
        })

    async def _handle_fork(self, request: web.Request) -> web.Response:
        sub, err = self._require_sub(request)
        if err:
            return err
        body = await self._json_body(request)
        result = self._history.fork_sub_conversation(
            sub.id, body.get("sdk_message_uuid"), name=body.get("name"),
        )
        if not result.success:
            return web.json_response({"success": False, "error": result.error}, status=404)
        return web.json_response(
            {"success": True, "sub_conversation": sub_to_dict(result.sub_conversation)},
            status=201,
        )

    async def _handle_exchange(self, request: web.Request) -> web.StreamResponse:
        sub, err = self._require_sub(request)
        if err:
            return err
        body = await self._json_body(request)
        prompt = body.get("prompt")
        if not isinstance(prompt, str):
            return web.json_response({"error": "prompt is required"}, status=400)
        try:
            attachments = _parse_attachments(body.get("attachments"))
            custom_config = _parse_custom_config(body.get("custom_config"))
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)

        exchange = self._orchestrator.stream_exchange(
            sub.id,
            sub.thread_id,
            prompt,
            attachments,
            history_enabled=body.get("history_enabled"),
            offline_mode_enabled=body.get("offline_mode_enabled"),
            custom_config=custom_config,
            model=body.get("model"),
            max_thinking_tokens=body.get("max_thinking_tokens"),
        )

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)
        logger.info(
            "SSE exchange %s opened sub=%s req=%s",
            exchange.id[:8], sub.id[:8], request.get("req_id", "unknown"),
        )
        count = 0
        try:
            async for chunk in exchange:
                data = chunk_to_dict(chunk)
                await response.write(_sse_frame(data["type"], data))
                count += 1
        except ConnectionResetError:
            logger.info("SSE client went away during exchange %s", exchange.id[:8])
        finally:
            await exchange.aclose()
            logger.info("SSE exchange %s closed chunks=%d", exchange.id[:8], count)
        return response

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        sub_id = request.match_info["id"]
        cancelled = self._orchestrator.cancel(sub_id)
        return web.json_response({"cancelled": cancelled})

    async def _handle_resolve_approval(self, request: web.Request) -> web.Response:
        call_id = request.match_info["call_id"]
        body = await self._json_body(request)
        if "approved" not in body:
            return web.json_response({"error": "approved is required"}, status=400)
        resolved = self._orchestrator.respond_tool_approval(
            call_id,
            bool(body["approved"]),
            message=body.get("message"),
            updated_input=body.get("updated_input"),
        )
        if not resolved:
            return web.json_response(
                {"error": f"No pending approval for {call_id}"}, status=404,
            )
        return web.json_response({"status": "resolved"})
