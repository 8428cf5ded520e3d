# session_state.py
"""Per-session classifier state and the bounded stores that hold it."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

MAX_TRACKED_SESSIONS = 10_000
STALE_SESSION_STATE_MS = 4 * 60 * 60 * 1000
MAX_RECENT_EVENTS = 20_000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class HistoryEntry:
    tokens: FrozenSet[str]
    at: int
    embedding: Optional[Tuple[float, ...]] = None


@dataclass(frozen=True)
class SteerTicket:
    created_at: int
    expires_at: int
    injected: bool = False
    injected_at: Optional[int] = None
    # A user message arrived after injection (strict mode reply).
    replied: bool = False


@dataclass
class SessionState:
    history: List[HistoryEntry] = field(default_factory=list)
    pending_soft_signals: int = 0
    pending_entries: List[HistoryEntry] = field(default_factory=list)
    last_reset_at: Optional[int] = None

    # Running mean of accepted embeddings for the current topic.
    topic_centroid: Optional[List[float]] = None
    topic_count: int = 0
    topic_dim: Optional[int] = None

    last_seen_at: int = 0
    pending_steer: Optional[SteerTicket] = None


def trim_tail(entries: List[HistoryEntry], limit: int) -> List[HistoryEntry]:
    """Keep the most recent `limit` entries (oldest dropped first)."""
    if limit <= 0:
        return []
    if len(entries) <= limit:
        return list(entries)
    return list(entries[len(entries) - limit:])


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

class SessionStore:
    """Capacity/TTL bounded map of session key -> SessionState.

    Also hands out one re-entrant lock per key so the classification pipeline
    for a key never runs twice at once.
    """

    def __init__(self, max_sessions: int = MAX_TRACKED_SESSIONS, ttl_ms: int = STALE_SESSION_STATE_MS):
        self.max_sessions = max_sessions
        self.ttl_ms = ttl_ms
        self._states: Dict[str, SessionState] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._mu = threading.Lock()

    def __len__(self) -> int:
        with self._mu:
            return len(self._states)

    def __contains__(self, key: str) -> bool:
        with self._mu:
            return key in self._states

    def lock_for(self, key: str) -> threading.RLock:
        with self._mu:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold the key's lock, re-fetching it if eviction replaced it while we waited."""
        while True:
            lock = self.lock_for(key)
            lock.acquire()
            with self._mu:
                current = self._locks.get(key)
            if current is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def get(self, key: str) -> Optional[SessionState]:
        with self._mu:
            return self._states.get(key)

    def get_or_create(self, key: str, now: int) -> SessionState:
        with self._mu:
            state = self._states.get(key)
            if state is None:
                state = SessionState(last_seen_at=now)
                self._states[key] = state
            return state

    def put(self, key: str, state: SessionState) -> None:
        with self._mu:
            self._states[key] = state

    def evict(self, key: str) -> None:
        with self._mu:
            self._states.pop(key, None)
            lock = self._locks.get(key)
            # A held lock means a pipeline is mid-flight for this key; keep it.
            if lock is not None and lock.acquire(blocking=False):
                lock.release()
                self._locks.pop(key, None)

    def prune(self, now: int) -> int:
        """Drop stale sessions, then the oldest ones beyond capacity. Returns count evicted."""
        with self._mu:
            stale = [k for k, s in self._states.items() if now - s.last_seen_at > self.ttl_ms]
            overflow: List[str] = []
            remaining = len(self._states) - len(stale)
            if remaining > self.max_sessions:
                stale_set = set(stale)
                ordered = sorted(
                    ((k, s) for k, s in self._states.items() if k not in stale_set),
                    key=lambda kv: kv[1].last_seen_at,
                )
                overflow = [k for k, _ in ordered[: remaining - self.max_sessions]]
        victims = stale + overflow
        for key in victims:
            self.evict(key)
        return len(victims)

    def items(self) -> List[Tuple[str, SessionState]]:
        with self._mu:
            return list(self._states.items())

    def replace_all(self, states: Dict[str, SessionState]) -> None:
        with self._mu:
            self._states = dict(states)

    def clear(self) -> None:
        with self._mu:
            self._states.clear()


class RecentMap:
    """Key -> timestamp map with TTL and size bound (dedupe bookkeeping)."""

    def __init__(self, ttl_ms: int, max_size: int = MAX_RECENT_EVENTS):
        self.ttl_ms = ttl_ms
        self.max_size = max_size
        self._data: Dict[str, int] = {}
        self._mu = threading.Lock()

    def __len__(self) -> int:
        with self._mu:
            return len(self._data)

    def __iter__(self) -> Iterator[str]:
        with self._mu:
            return iter(list(self._data))

    def seen_within(self, key: str, window_ms: int, now: int) -> bool:
        with self._mu:
            ts = self._data.get(key)
        return ts is not None and now - ts < window_ms

    def mark(self, key: str, now: int) -> None:
        with self._mu:
            self._data[key] = now

    def check_and_mark(self, key: str, window_ms: int, now: int) -> bool:
        """Atomically report whether key was seen within window; mark it when it was not."""
        with self._mu:
            ts = self._data.get(key)
            if ts is not None and now - ts < window_ms:
                return True
            self._data[key] = now
        return False

    def prune(self, now: int) -> None:
        with self._mu:
            for key in [k for k, ts in self._data.items() if now - ts > self.ttl_ms]:
                del self._data[key]
            if len(self._data) <= self.max_size:
                return
            ordered = sorted(self._data.items(), key=lambda kv: kv[1])
            for key, _ in ordered[: len(self._data) - self.max_size]:
                del self._data[key]

    def to_dict(self) -> Dict[str, int]:
        with self._mu:
            return dict(self._data)

    def load(self, data: Dict[str, int]) -> None:
        with self._mu:
            self._data = dict(data)
