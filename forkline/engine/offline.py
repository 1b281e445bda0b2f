"""Prompt synthesis for the local fallback engine.

The fallback has no server-side session, so each exchange carries its own
context block: working directory, tool parameter hints, the workspace's
AGENTS.md and a bounded summary of the conversation so far.
"""
from __future__ import annotations

import logging
from typing import Iterable

from forkline.engine.models import Message, MessageRole, TextPart, ToolInvocationPart

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...(earlier messages truncated)..."

TOOL_PARAMETER_HINTS = "\n".join([
    "IMPORTANT: When using tools, use these EXACT parameter names:",
    '- Read: use "file_path" (not "file")',
    '- Write: use "file_path" and "content"',
    '- Edit: use "file_path", "old_string", "new_string"',
    '- Glob: use "pattern" (e.g. "**/*.py") and optionally "path"',
    '- Grep: use "pattern" and optionally "path"',
    '- Bash: use "command"',
])


def summarize_tool_call(part: ToolInvocationPart) -> str:
    """One-line summary such as ``[Used Read: src/app.py]``."""
    tool_input = part.input if isinstance(part.input, dict) else {}
    name = part.tool_name
    detail = None
    if name == "Read":
        detail = tool_input.get("file_path") or tool_input.get("file")
    elif name in ("Edit", "Write"):
        detail = tool_input.get("file_path")
    elif name == "Glob":
        detail = tool_input.get("pattern")
    elif name == "Grep" and tool_input.get("pattern"):
        detail = f'"{tool_input["pattern"]}"'
    elif name == "Bash" and tool_input.get("command"):
        command = str(tool_input["command"])
        detail = command[:50] + ("..." if len(command) > 50 else "")
    if detail:
        return f"[Used {name}: {detail}]"
    return f"[Used {name}]"


def summarize_history(messages: Iterable[Message], char_budget: int = 10000) -> str:
    """Render prior messages as plain text, keeping only the newest ``char_budget`` chars."""
    entries: list[str] = []
    for msg in messages:
        if msg.role == MessageRole.USER:
            texts = [p.text for p in msg.parts if isinstance(p, TextPart)]
            if texts:
                entries.append("User: " + "\n".join(texts))
            continue

        texts = [p.text for p in msg.parts if isinstance(p, TextPart) and p.text]
        tools = [
            summarize_tool_call(p) for p in msg.parts
            if isinstance(p, ToolInvocationPart)
        ]
        content = "\n".join(texts)
        if tools:
            content = f"{content}\n{' '.join(tools)}" if content else " ".join(tools)
        if content:
            entries.append("Assistant: " + content)

    history = "\n\n".join(entries)
    if len(history) > char_budget:
        history = f"{TRUNCATION_MARKER}\n\n{history[-char_budget:]}"
    return history


def build_fallback_prompt(
    prompt: str,
    *,
    history: list[Message],
    cwd: str | None,
    model: str | None,
    agents_md: str | None = None,
    char_budget: int = 10000,
) -> str:
    sections = [
        "[CONTEXT]\n"
        f"You are a coding assistant in OFFLINE mode (local model: {model or 'unknown'}).\n"
        f"Working directory: {cwd or '.'}\n\n"
        f"{TOOL_PARAMETER_HINTS}\n\n"
        "When asked about the project, use Glob to find files and Read to examine them.\n"
        "Be concise and helpful.\n"
        "[/CONTEXT]"
    ]
    if agents_md:
        sections.append(f"[AGENTS.MD]\n{agents_md}\n[/AGENTS.MD]")

    summary = summarize_history(history, char_budget)
    if summary:
        sections.append(f"[CONVERSATION HISTORY]\n{summary}\n[/CONVERSATION HISTORY]")
        logger.debug("Fallback prompt carries %d chars of history", len(summary))

    sections.append(f"[CURRENT REQUEST]\n{prompt}\n[/CURRENT REQUEST]")
    return "\n\n".join(sections)
