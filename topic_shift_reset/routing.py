# routing.py
"""Peer inference and default session-key routing for channel events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Peer:
    kind: str  # direct | group | thread
    id: str


@dataclass(frozen=True)
class Route:
    session_key: str
    agent_id: str
    route_kind: str


def looks_like_group(value: Optional[str]) -> bool:
    candidate = (value or "").lower()
    if not candidate:
        return False
    return (
        ":group:" in candidate
        or ":channel:" in candidate
        or candidate.endswith("@g.us")
        or "thread" in candidate
    )


def infer_peer(sender: Optional[str], conversation_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> Peer:
    """Thread when metadata carries a threadId, otherwise group or direct from id shape."""
    sender = (sender or "").strip()
    conversation = (conversation_id or "").strip() or sender
    meta = metadata if isinstance(metadata, dict) else {}

    thread_raw = meta.get("threadId")
    if isinstance(thread_raw, bool):
        thread_id = ""
    elif isinstance(thread_raw, str):
        thread_id = thread_raw.strip()
    elif isinstance(thread_raw, (int, float)):
        thread_id = str(thread_raw)
    else:
        thread_id = ""

    if thread_id:
        return Peer(kind="thread", id=f"{conversation or sender}:thread:{thread_id}")

    kind = "group" if looks_like_group(conversation) or looks_like_group(sender) else "direct"
    return Peer(kind=kind, id=conversation or sender or "unknown")


def _key_part(value: Optional[str], fallback: str) -> str:
    s = (value or "").strip().lower()
    return s or fallback


def default_route_key(agent_id: Optional[str], channel: str, account_id: Optional[str], peer: Peer) -> str:
    """agent:<agent>:<channel>:<account>:<kind>:<peer>"""
    return ":".join(
        [
            "agent",
            _key_part(agent_id, "main"),
            _key_part(channel, "unknown"),
            _key_part(account_id, "default"),
            peer.kind,
            peer.id.strip().lower() or "unknown",
        ]
    )


def default_route(agent_id: Optional[str], channel: str, account_id: Optional[str], peer: Peer) -> Route:
    if not (channel or "").strip():
        raise ValueError("channel is required for routing")
    return Route(
        session_key=default_route_key(agent_id, channel, account_id, peer),
        agent_id=_key_part(agent_id, "main"),
        route_kind=peer.kind,
    )
