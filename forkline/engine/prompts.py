"""Outgoing prompt preparation: mention cleanup, system prompt, content blocks."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from forkline.engine.models import Attachment

logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"@\[(file|folder|skill|agent|tool):([^\]]+)\]")
_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$|^mcp__[a-zA-Z0-9_-]+__[a-zA-Z0-9_-]+$")
_PATH_MENTION_RE = re.compile(r"@\[(?:file|folder):(?:local|external):([^\]]+)\]")
_DROPPED_MENTION_RE = re.compile(r"@\[(?:agent|skill|tool):[^\]]+\]")


@dataclass
class ParsedPrompt:
    text: str
    agents: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)


def parse_mentions(prompt: str) -> ParsedPrompt:
    """Turn ``@[kind:name]`` mentions into plain text the engine understands.

    File and folder mentions become their paths. Agent, skill and tool
    mentions are removed; tool mentions come back as usage hints and
    skill mentions as an instruction.
    """
    parsed = ParsedPrompt(text="")
    for kind, name in _MENTION_RE.findall(prompt):
        if kind == "agent":
            parsed.agents.append(name)
        elif kind == "skill":
            parsed.skills.append(name)
        elif kind in ("file", "folder"):
            parsed.files.append(name)
        elif kind == "tool" and _TOOL_NAME_RE.match(name):
            parsed.tools.append(name)

    text = _DROPPED_MENTION_RE.sub("", prompt).strip()
    text = _PATH_MENTION_RE.sub(r"\1", text)

    if parsed.tools:
        hints = " ".join(
            f"Use the {t} tool for this request." if t.startswith("mcp__")
            else f"Use tools from the {t} MCP server for this request."
            for t in parsed.tools
        )
        text = f"{hints}\n\n{text}"

    skill_list = '", "'.join(parsed.skills)
    if not text.strip():
        if parsed.agents and parsed.skills:
            text = (
                f"Use the {', '.join(parsed.agents)} agent(s) and invoke the "
                f'"{skill_list}" skill(s) using the Skill tool for this task.'
            )
        elif parsed.agents:
            text = f"Use the {', '.join(parsed.agents)} agent(s) for this task."
        elif parsed.skills:
            text = f'Invoke the "{skill_list}" skill(s) using the Skill tool for this task.'
    elif parsed.skills:
        text = f'{text}\n\nUse the "{skill_list}" skill(s) for this task.'

    parsed.text = text
    return parsed


def read_agents_md(cwd: str | None) -> str | None:
    if not cwd:
        return None
    path = Path(cwd) / "AGENTS.md"
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not content.strip():
        return None
    logger.debug("Found AGENTS.md at %s (%d chars)", path, len(content))
    return content


def build_system_prompt(agents_md: str | None) -> dict[str, Any]:
    """The engine's own preset, with AGENTS.md appended when present."""
    config: dict[str, Any] = {"type": "preset", "preset": "claude_code"}
    if agents_md:
        config["append"] = (
            "\n\n# AGENTS.md\nThe following are the project's AGENTS.md "
            f"instructions:\n\n{agents_md}"
        )
    return config


def build_user_content(text: str, attachments: list[Attachment] | None) -> str | list[dict[str, Any]]:
    """Engine user-message content: images first, then text.

    File attachments are referenced by path in the text.
    """
    attachments = attachments or []
    files = [a for a in attachments if a.kind != "image" and a.path]
    if files:
        listing = "\n".join(f"- {a.path}" for a in files)
        text = f"{text}\n\nAttached files:\n{listing}" if text.strip() else f"Attached files:\n{listing}"

    images = [a for a in attachments if a.kind == "image" and a.data]
    if not images:
        return text
    content: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": img.media_type,
                "data": img.data,
            },
        }
        for img in images
    ]
    if text.strip():
        content.append({"type": "text", "text": text})
    return content
