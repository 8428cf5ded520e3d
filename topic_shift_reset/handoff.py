# handoff.py
"""Carry a few lines of the previous transcript into the rotated session.

Transcripts are JSONL; only `{"type": "message", "message": {...}}` records
with a user/assistant role and non-empty text are considered.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import ResolvedConfig
from .logging_utils import get_logger, kv_line
from .registry import resolve_session_file

log = get_logger()

READ_BLOCK_BYTES = 64 * 1024
ELLIPSIS = "…"

SUMMARY_HEADER = "Topic-shift handoff (compact context from previous session):"
VERBATIM_HEADER = "Topic-shift handoff (last messages from previous session):"


@dataclass(frozen=True)
class TranscriptMessage:
    role: str
    text: str


def extract_text_from_content(content: Any) -> str:
    """Plain string content, or the joined `text`/`input_text` parts of a content list."""
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""
    chunks: List[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str):
            text = item.get("input_text")
        if isinstance(text, str) and text.strip():
            chunks.append(text.strip())
    return "\n".join(chunks).strip()


def _parse_line(line: str) -> Optional[TranscriptMessage]:
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        record = json.loads(trimmed)
    except ValueError:
        return None
    if not isinstance(record, dict) or record.get("type") != "message":
        return None
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    role = message.get("role")
    role = role.strip().lower() if isinstance(role, str) else ""
    if role not in ("user", "assistant"):
        return None
    text = extract_text_from_content(message.get("content"))
    if not text:
        return None
    return TranscriptMessage(role=role, text=text)


def _parse_lines(lines: List[str]) -> List[TranscriptMessage]:
    out: List[TranscriptMessage] = []
    for line in lines:
        msg = _parse_line(line)
        if msg is not None:
            out.append(msg)
    return out


def _read_tail_bytes(path: str, max_bytes: int) -> Tuple[bytes, bool]:
    """Read up to max_bytes from the end of the file, block by block. Returns (data, reached_start)."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        budget = max(0, max_bytes)
        blocks: List[bytes] = []
        while pos > 0 and budget > 0:
            size = min(READ_BLOCK_BYTES, pos, budget)
            pos -= size
            f.seek(pos)
            blocks.append(f.read(size))
            budget -= size
    blocks.reverse()
    return b"".join(blocks), pos == 0


def read_transcript_tail(path: str, take_last: int, max_bytes: int = 256 * 1024) -> List[TranscriptMessage]:
    """Last `take_last` messages of a transcript.

    Only the trailing `max_bytes` are read first; if that window yields fewer
    than `take_last` messages and the file is larger, the whole file is read.
    """
    data, reached_start = _read_tail_bytes(path, max_bytes)
    lines = data.decode("utf-8", errors="replace").split("\n")
    if not reached_start and lines:
        # First line is most likely cut mid-record.
        lines = lines[1:]
    messages = _parse_lines(lines)

    if len(messages) < take_last and not reached_start:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            messages = _parse_lines(f.read().split("\n"))

    if len(messages) <= take_last:
        return messages
    return messages[len(messages) - take_last:]


def truncate_text(text: str, max_chars: int) -> str:
    compact = " ".join((text or "").split())
    if len(compact) <= max_chars:
        return compact
    return compact[: max(1, max_chars - 1)].rstrip() + ELLIPSIS


def format_handoff_text(mode: str, messages: List[TranscriptMessage], max_chars: int) -> Optional[str]:
    if mode == "none" or not messages:
        return None
    header = VERBATIM_HEADER if mode == "verbatim" else SUMMARY_HEADER
    lines = [f"- {m.role}: {truncate_text(m.text, max_chars)}" for m in messages]
    return header + "\n" + "\n".join(lines)


def build_handoff(cfg: ResolvedConfig, store_path: str, previous_entry: Optional[Dict[str, Any]]) -> Optional[str]:
    """Handoff text for the session that was just rotated away, or None. Never raises."""
    if cfg.handoff_mode == "none":
        return None
    session_file = resolve_session_file(store_path, previous_entry)
    if not session_file or not os.path.isfile(session_file):
        return None
    try:
        tail = read_transcript_tail(session_file, cfg.handoff_last_n, cfg.handoff_tail_bytes)
    except Exception as e:
        log.warning(kv_line("handoff read failed", file=session_file, err=e))
        return None
    return format_handoff_text(cfg.handoff_mode, tail, cfg.handoff_max_chars)
