# host.py
"""File-backed default host: registries on disk, queued system events in memory."""

from __future__ import annotations

import os
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from .engine import HostPorts
from .routing import Peer, Route, default_route

MAX_QUEUED_EVENTS_PER_SESSION = 50


@dataclass(frozen=True)
class SystemEvent:
    text: str
    session_key: str
    context_key: str


class FileHost:
    """Registry layout: <state_dir>/agents/<agent>/sessions/sessions.json"""

    def __init__(self, state_dir: str, max_events_per_session: int = MAX_QUEUED_EVENTS_PER_SESSION):
        self.state_dir = os.path.abspath(state_dir)
        self.max_events_per_session = max_events_per_session
        self._events: Dict[str, Deque[SystemEvent]] = {}
        self._mu = threading.Lock()

    def resolve_store_path(self, agent_id: str) -> str:
        agent = (agent_id or "").strip().lower() or "main"
        if os.sep in agent or agent in (".", ".."):
            raise ValueError(f"invalid agent id: {agent_id!r}")
        return os.path.join(self.state_dir, "agents", agent, "sessions", "sessions.json")

    def resolve_state_dir(self) -> str:
        return self.state_dir

    def resolve_route(self, channel: str, account_id: Optional[str], peer: Peer, agent_id: Optional[str] = None) -> Route:
        return default_route(agent_id, channel, account_id, peer)

    def enqueue_system_event(self, text: str, session_key: str, context_key: str) -> None:
        with self._mu:
            queue = self._events.get(session_key)
            if queue is None:
                queue = deque(maxlen=self.max_events_per_session)
                self._events[session_key] = queue
            # Same context key replaces the queued copy.
            kept = [e for e in queue if e.context_key != context_key]
            queue.clear()
            queue.extend(kept)
            queue.append(SystemEvent(text=text, session_key=session_key, context_key=context_key))

    def drain_system_events(self, session_key: str) -> List[SystemEvent]:
        with self._mu:
            queue = self._events.pop(session_key, None)
        return list(queue) if queue else []

    def pending_event_count(self) -> int:
        with self._mu:
            return sum(len(q) for q in self._events.values())

    def ports(self) -> HostPorts:
        return HostPorts(
            resolve_store_path=self.resolve_store_path,
            enqueue_system_event=self.enqueue_system_event,
            resolve_route=self.resolve_route,
            resolve_state_dir=self.resolve_state_dir,
        )
