"""Read conversation history back from an agent CLI's own session storage.

The bridge never persists chat history itself. On restore, the transcript of
a resumed session is read from where the CLI keeps it. Only Claude's layout
(``~/.claude/projects/<encoded cwd>/<session id>.jsonl``) is known.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LAST_OUTPUT_CHARS = 500


@dataclass
class Transcript:
    model: str | None = None
    messages: list[dict] = field(default_factory=list)
    last_output: str = ""


def read_transcript(
    agent_type: str,
    session_id: str | None,
    cwd: str | None,
    claude_home: Path | None = None,
) -> Transcript | None:
    """Transcript for a backend session, or None when it cannot be found."""
    if agent_type == "claude":
        return read_claude_transcript(session_id, cwd, claude_home)
    return None


def find_claude_session_file(
    session_id: str, cwd: str | None, claude_home: Path | None = None,
) -> Path | None:
    projects_dir = (claude_home or Path.home() / ".claude") / "projects"
    if cwd:
        direct = projects_dir / cwd.replace("/", "-") / f"{session_id}.jsonl"
        if direct.exists():
            return direct
    if not projects_dir.is_dir():
        return None
    for candidate in projects_dir.glob(f"*/{session_id}.jsonl"):
        return candidate
    return None


def _timestamp_ms(value: Any) -> float:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            pass
    return time.time() * 1000


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            c["text"] for c in content
            if isinstance(c, dict) and c.get("type") == "text" and c.get("text")
        )
    return ""


def _transcript_blocks(blocks: Any) -> list[dict]:
    """Keep text and tool_use blocks only."""
    if not isinstance(blocks, list):
        return []
    out = []
    for b in blocks:
        if not isinstance(b, dict):
            continue
        if b.get("type") == "text" and b.get("text"):
            out.append({"type": "text", "text": b["text"]})
        elif b.get("type") == "tool_use":
            out.append({
                "type": "tool_use", "id": b.get("id"), "name": b.get("name"),
                "input": b.get("input"),
            })
    return out


def parse_claude_transcript(lines: list[str]) -> Transcript:
    transcript = Transcript()
    messages = transcript.messages
    last_output = ""

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue

        message = entry.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        ts = _timestamp_ms(entry.get("timestamp"))

        if entry.get("type") == "user":
            if isinstance(content, str):
                messages.append({
                    "id": entry.get("uuid") or f"t-{len(messages)}",
                    "type": "user",
                    "content": content,
                    "timestamp": ts,
                })
            elif isinstance(content, list):
                # Tool results belong to the assistant turn that asked for them
                last = messages[-1] if messages else None
                if last and last["type"] == "assistant":
                    for b in content:
                        if isinstance(b, dict) and b.get("type") == "tool_result" and b.get("tool_use_id"):
                            last["content"].append({
                                "type": "tool_result",
                                "toolUseId": b["tool_use_id"],
                                "content": _result_text(b.get("content")),
                            })
            continue

        if entry.get("type") == "assistant" and content:
            if message.get("model"):
                transcript.model = message["model"]
            blocks = _transcript_blocks(content)
            if not blocks:
                continue
            messages.append({
                "id": entry.get("uuid") or f"t-{len(messages)}",
                "type": "assistant",
                "content": blocks,
                "timestamp": ts,
            })
            for b in blocks:
                if b["type"] == "text":
                    last_output = b["text"]

    transcript.last_output = last_output[-LAST_OUTPUT_CHARS:]
    return transcript


def read_claude_transcript(
    session_id: str | None, cwd: str | None, claude_home: Path | None = None,
) -> Transcript | None:
    if not session_id:
        return None
    path = find_claude_session_file(session_id, cwd, claude_home)
    if path is None:
        return None
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.warning("Failed to read Claude session %s: %s", session_id[:8], e)
        return None
    return parse_claude_transcript(lines)
