"""CLI entry point.

Usage:
    forkline serve --port 8765
    forkline chat --workspace ~/src/project "Add a README"
    forkline chat --thread <id> --sub <id> "Now add tests"
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from forkline.engine.approvals import ToolApprovalRendezvous
from forkline.engine.chunks import (
    AskUserQuestion,
    AskUserQuestionTimeout,
    AuthErrorChunk,
    ErrorChunk,
    Finish,
    TextDelta,
    TextEnd,
    ToolInputAvailable,
)
from forkline.engine.config import EngineConfig
from forkline.engine.conversation_store import ConversationStore
from forkline.engine.models import ConversationMode
from forkline.engine.orchestrator import SessionOrchestrator
from forkline.engine.providers import ClaudeProvider
from forkline.engine.providers.env import EnvCredentialSource
from forkline.engine.selector import EngineSelector
from forkline.engine.yaml_config import ForklineConfig, ServerConfig, load_yaml_config
from forkline.shared.services.connectivity import HttpConnectivityChecker, OllamaModelCatalog
from forkline.shared.services.history import HistoryService
from forkline.shared.services.snapshot import RollbackSnapshotService


@dataclass
class Services:
    config: EngineConfig
    store: ConversationStore
    snapshots: RollbackSnapshotService
    orchestrator: SessionOrchestrator
    history: HistoryService


def build_services(config: EngineConfig) -> Services:
    """Wire the store, selector, provider and orchestrator for one process."""
    store = ConversationStore(config.resolved_db_path())
    snapshots = RollbackSnapshotService(config.snapshots_dir())
    selector = EngineSelector(
        EnvCredentialSource(),
        HttpConnectivityChecker(config.connectivity_url, config.connectivity_timeout_seconds),
        OllamaModelCatalog(config.fallback_base_url, config.connectivity_timeout_seconds),
        fallback_base_url=config.fallback_base_url,
        preferred_fallback_model=config.fallback_model,
    )
    orchestrator = SessionOrchestrator(
        store,
        selector,
        ClaudeProvider(config.cli_path),
        snapshots=snapshots,
        config=config,
        rendezvous=ToolApprovalRendezvous(config.approval_timeout_seconds),
    )
    return Services(
        config=config,
        store=store,
        snapshots=snapshots,
        orchestrator=orchestrator,
        history=HistoryService(store, snapshots),
    )


def _load_config(config_path: str | None) -> ForklineConfig:
    if config_path:
        return load_yaml_config(config_path)
    return ForklineConfig(engine=EngineConfig.from_env())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forkline",
        description="Branching conversations with a coding-agent engine",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a forkline.yaml config file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: 8765, 0 for any)")

    chat = sub.add_parser("chat", help="Run one exchange and print the reply")
    chat.add_argument("prompt", help="The prompt to send")
    chat.add_argument("--thread", default=None, help="Existing thread id")
    chat.add_argument("--sub", default=None, help="Existing sub-conversation id")
    chat.add_argument(
        "--workspace", "-w",
        default=None,
        help="Workspace for a new thread (default: current dir)",
    )
    chat.add_argument(
        "--mode",
        choices=[m.value for m in ConversationMode],
        default=ConversationMode.AGENT.value,
        help="Mode for a new sub-conversation",
    )
    chat.add_argument("--model", default=None, help="Engine model override")
    chat.add_argument(
        "--offline",
        action="store_true",
        help="Allow the local fallback engine when the remote is unreachable",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    cfg = _load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(
        logging, cfg.engine.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    services = build_services(cfg.engine)
    if args.command == "serve":
        _serve(services, cfg.server, args.host, args.port)
    else:
        try:
            code = asyncio.run(_chat(services, args))
        except KeyboardInterrupt:
            print("\nInterrupted.")
            sys.exit(1)
        sys.exit(code)


def _serve(services: Services, server_cfg: ServerConfig, host: str | None, port: int | None) -> None:
    from forkline.server.server import ForklineServer

    server = ForklineServer(
        services.orchestrator,
        services.store,
        services.history,
        host=host or server_cfg.host,
        port=server_cfg.port if port is None else port,
    )
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


async def _chat(services: Services, args: argparse.Namespace) -> int:
    store = services.store
    orchestrator = services.orchestrator

    if args.thread and args.sub:
        sub = store.get_sub_conversation(args.sub)
        if sub is None or sub.thread_id != args.thread:
            print(f"Error: sub-conversation {args.sub} not found in thread {args.thread}")
            return 1
        thread_id, sub_id = args.thread, args.sub
    else:
        workspace = str(Path(args.workspace or ".").resolve())
        thread = store.create_thread(name=args.prompt[:40], workspace_path=workspace)
        sub = store.create_sub_conversation(thread.id, mode=ConversationMode(args.mode))
        thread_id, sub_id = thread.id, sub.id
        print(f"thread={thread_id} sub={sub_id}", file=sys.stderr)

    exchange = orchestrator.stream_exchange(
        sub_id,
        thread_id,
        args.prompt,
        model=args.model,
        offline_mode_enabled=True if args.offline else None,
    )
    failed = False
    try:
        async for chunk in exchange:
            if isinstance(chunk, TextDelta):
                sys.stdout.write(chunk.delta)
                sys.stdout.flush()
            elif isinstance(chunk, TextEnd):
                sys.stdout.write("\n")
            elif isinstance(chunk, ToolInputAvailable):
                print(f"[{chunk.tool_name}]", file=sys.stderr)
            elif isinstance(chunk, AskUserQuestion):
                await _answer_questions(orchestrator, chunk)
            elif isinstance(chunk, AskUserQuestionTimeout):
                print("Question timed out.", file=sys.stderr)
            elif isinstance(chunk, (ErrorChunk, AuthErrorChunk)):
                failed = True
                print(f"Error: {chunk.error_text}", file=sys.stderr)
            elif isinstance(chunk, Finish) and chunk.metadata:
                cost = chunk.metadata.get("total_cost_usd")
                if cost is not None:
                    print(f"cost=${cost:.4f}", file=sys.stderr)
    finally:
        await exchange.aclose()
        await orchestrator.shutdown()
    return 1 if failed else 0


async def _answer_questions(orchestrator: SessionOrchestrator, chunk: AskUserQuestion) -> None:
    answers: dict[str, str] = {}
    for question in chunk.questions:
        text = question.get("question", "") if isinstance(question, dict) else str(question)
        options = question.get("options", []) if isinstance(question, dict) else []
        print(f"\n? {text}", file=sys.stderr)
        for index, option in enumerate(options, 1):
            label = option.get("label", option) if isinstance(option, dict) else option
            print(f"  {index}. {label}", file=sys.stderr)
        reply = (await asyncio.to_thread(input, "> ")).strip()
        if reply.isdigit() and 0 < int(reply) <= len(options):
            option = options[int(reply) - 1]
            reply = option.get("label", str(option)) if isinstance(option, dict) else str(option)
        answers[text] = reply

    if not any(answers.values()):
        orchestrator.respond_tool_approval(chunk.call_id, False, message="Skipped")
        return
    orchestrator.respond_tool_approval(
        chunk.call_id,
        True,
        updated_input={"questions": chunk.questions, "answers": answers},
    )


if __name__ == "__main__":
    main()
