# persistence.py
"""Runtime state snapshots and legacy orphan recovery.

Snapshot file: <state_dir>/plugins/topic-shift-reset/runtime-state.v1.json

    {
      "version": 1,
      "savedAt": <ms>,
      "sessionStateBySessionKey": {<key>: {...}},
      "recentRotationBySession": {<key:fingerprint>: <ms>}
    }

A snapshot whose version differs from SNAPSHOT_VERSION is discarded whole.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .logging_utils import get_logger, kv_line
from .registry import FileLock, LockFactory, RESET_ARCHIVE_MARKER, read_json_with_fallback, write_json_atomically
from .session_state import HistoryEntry, SessionState, SteerTicket, now_ms, trim_tail

log = get_logger()

SNAPSHOT_VERSION = 1
PLUGIN_DIR_NAME = "topic-shift-reset"
SNAPSHOT_FILE_NAME = f"runtime-state.v{SNAPSHOT_VERSION}.json"
TRANSCRIPT_SUFFIX = ".jsonl"


def snapshot_path(state_dir: str) -> str:
    return os.path.join(state_dir, "plugins", PLUGIN_DIR_NAME, SNAPSHOT_FILE_NAME)


# ---------------------------------------------------------------------------
# (De)serialization
# ---------------------------------------------------------------------------

def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _float_list(value: Any) -> Optional[List[float]]:
    if not isinstance(value, list) or not value:
        return None
    out: List[float] = []
    for v in value:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        out.append(float(v))
    return out


def serialize_entry(entry: HistoryEntry) -> Dict[str, Any]:
    out: Dict[str, Any] = {"tokens": sorted(entry.tokens), "at": entry.at}
    if entry.embedding:
        out["embedding"] = list(entry.embedding)
    return out


def deserialize_entry(raw: Any) -> Optional[HistoryEntry]:
    if not isinstance(raw, dict):
        return None
    tokens = raw.get("tokens")
    if not isinstance(tokens, list):
        return None
    at = _int_or_none(raw.get("at"))
    if at is None:
        return None
    embedding = _float_list(raw.get("embedding"))
    return HistoryEntry(
        tokens=frozenset(t for t in tokens if isinstance(t, str) and t),
        at=at,
        embedding=tuple(embedding) if embedding else None,
    )


def serialize_state(state: SessionState) -> Dict[str, Any]:
    steer = state.pending_steer
    return {
        "history": [serialize_entry(e) for e in state.history],
        "pendingSoftSignals": state.pending_soft_signals,
        "pendingEntries": [serialize_entry(e) for e in state.pending_entries],
        "lastResetAt": state.last_reset_at,
        "topicCentroid": list(state.topic_centroid) if state.topic_centroid else None,
        "topicCount": state.topic_count,
        "topicDim": state.topic_dim,
        "lastSeenAt": state.last_seen_at,
        "pendingSteer": None
        if steer is None
        else {
            "createdAt": steer.created_at,
            "expiresAt": steer.expires_at,
            "injected": steer.injected,
            "injectedAt": steer.injected_at,
            "replied": steer.replied,
        },
    }


def _deserialize_steer(raw: Any) -> Optional[SteerTicket]:
    if not isinstance(raw, dict):
        return None
    created = _int_or_none(raw.get("createdAt"))
    expires = _int_or_none(raw.get("expiresAt"))
    if created is None or expires is None:
        return None
    return SteerTicket(
        created_at=created,
        expires_at=expires,
        injected=bool(raw.get("injected")),
        injected_at=_int_or_none(raw.get("injectedAt")),
        replied=bool(raw.get("replied")),
    )


def deserialize_state(raw: Any, history_window: int = 40, soft_window: int = 4) -> Optional[SessionState]:
    """Rebuild a SessionState from its snapshot form; None when the record is unusable."""
    if not isinstance(raw, dict):
        return None
    history_raw = raw.get("history")
    if not isinstance(history_raw, list):
        return None
    history = [e for e in (deserialize_entry(r) for r in history_raw) if e is not None]
    pending_raw = raw.get("pendingEntries")
    pending = [e for e in (deserialize_entry(r) for r in (pending_raw if isinstance(pending_raw, list) else [])) if e is not None]

    centroid = _float_list(raw.get("topicCentroid"))
    topic_count = _int_or_none(raw.get("topicCount")) or 0
    topic_dim = _int_or_none(raw.get("topicDim"))
    if centroid is None or topic_count <= 0 or topic_dim != len(centroid):
        centroid, topic_count, topic_dim = None, 0, None

    pending_soft = max(0, _int_or_none(raw.get("pendingSoftSignals")) or 0)
    return SessionState(
        history=trim_tail(history, history_window),
        pending_soft_signals=min(pending_soft, soft_window),
        pending_entries=trim_tail(pending, soft_window),
        last_reset_at=_int_or_none(raw.get("lastResetAt")),
        topic_centroid=centroid,
        topic_count=topic_count,
        topic_dim=topic_dim,
        last_seen_at=_int_or_none(raw.get("lastSeenAt")) or 0,
        pending_steer=_deserialize_steer(raw.get("pendingSteer")),
    )


@dataclass
class Snapshot:
    saved_at: int
    states: Dict[str, SessionState] = field(default_factory=dict)
    recent_rotations: Dict[str, int] = field(default_factory=dict)


def build_snapshot(states: Dict[str, SessionState], recent_rotations: Dict[str, int], now: Optional[int] = None) -> Dict[str, Any]:
    return {
        "version": SNAPSHOT_VERSION,
        "savedAt": now_ms() if now is None else now,
        "sessionStateBySessionKey": {k: serialize_state(s) for k, s in states.items()},
        "recentRotationBySession": dict(recent_rotations),
    }


def parse_snapshot(
    raw: Any,
    expected_version: int = SNAPSHOT_VERSION,
    history_window: int = 40,
    soft_window: int = 4,
) -> Optional[Snapshot]:
    """Validate and decode a snapshot document. Any version other than expected -> None."""
    if not isinstance(raw, dict):
        return None
    version = raw.get("version")
    if version != expected_version:
        log.warning(kv_line("state version mismatch", expected=expected_version, found=version))
        return None

    states: Dict[str, SessionState] = {}
    by_key = raw.get("sessionStateBySessionKey")
    if isinstance(by_key, dict):
        for key, value in by_key.items():
            state = deserialize_state(value, history_window, soft_window)
            if isinstance(key, str) and key and state is not None:
                states[key] = state

    rotations: Dict[str, int] = {}
    rot_raw = raw.get("recentRotationBySession")
    if isinstance(rot_raw, dict):
        for key, value in rot_raw.items():
            ts = _int_or_none(value)
            if isinstance(key, str) and ts is not None:
                rotations[key] = ts

    return Snapshot(saved_at=_int_or_none(raw.get("savedAt")) or 0, states=states, recent_rotations=rotations)


# ---------------------------------------------------------------------------
# Persister
# ---------------------------------------------------------------------------

class StatePersister:
    """Debounced snapshot writer.

    `snapshot_fn` builds the document to write; it runs on the flushing thread.
    Writes never happen on the caller's thread except for an explicit flush().
    """

    def __init__(self, path: str, snapshot_fn: Callable[[], Dict[str, Any]], debounce_seconds: float = 5.0):
        self.path = path
        self.snapshot_fn = snapshot_fn
        self.debounce_seconds = debounce_seconds
        self._mu = threading.Lock()
        self._write_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._dirty = False
        self._closed = False

    @property
    def dirty(self) -> bool:
        with self._mu:
            return self._dirty

    def load(self, history_window: int = 40, soft_window: int = 4) -> Optional[Snapshot]:
        if not os.path.exists(self.path):
            return None
        raw = read_json_with_fallback(self.path, None)
        if raw is None:
            log.warning(kv_line("state file unreadable", path=self.path))
            return None
        return parse_snapshot(raw, SNAPSHOT_VERSION, history_window, soft_window)

    def schedule(self) -> None:
        with self._mu:
            self._dirty = True
            if self._closed or self._timer is not None:
                return
            self._timer = threading.Timer(self.debounce_seconds, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def flush_soon(self) -> None:
        """Urgent flush on a background thread (used right after a rotation)."""
        with self._mu:
            self._dirty = True
            if self._closed:
                return
            self._cancel_timer_locked()
        t = threading.Thread(target=self.flush, name="topic-shift-flush", daemon=True)
        t.start()

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        with self._mu:
            self._timer = None
        self.flush()

    def flush(self) -> bool:
        """Write the snapshot if anything changed. Returns False on a failed write."""
        with self._write_lock:
            with self._mu:
                if not self._dirty:
                    return True
                self._dirty = False
            try:
                doc = self.snapshot_fn()
                write_json_atomically(self.path, doc)
            except Exception as e:
                with self._mu:
                    self._dirty = True
                log.warning(kv_line("persist failed", path=self.path, err=e))
                return False
            return True

    def close(self, timeout: float = 5.0) -> bool:
        """Final flush bounded by `timeout` seconds. Returns True when it completed."""
        with self._mu:
            self._closed = True
            self._cancel_timer_locked()
        result: Dict[str, bool] = {}

        def _run() -> None:
            result["ok"] = self.flush()

        t = threading.Thread(target=_run, name="topic-shift-final-flush", daemon=True)
        t.start()
        t.join(timeout)
        if t.is_alive():
            log.warning(kv_line("persist timeout", path=self.path, timeout_s=float(timeout)))
            return False
        return result.get("ok", False)


# ---------------------------------------------------------------------------
# Orphan recovery
# ---------------------------------------------------------------------------

def recovered_session_key(agent_id: str, session_id: str) -> str:
    return f"agent:{agent_id}:recovered:{session_id}"


def _referenced(store: Dict[str, Any]) -> Tuple[Set[str], Set[str]]:
    ids: Set[str] = set()
    files: Set[str] = set()
    for entry in store.values():
        if not isinstance(entry, dict):
            continue
        sid = entry.get("sessionId")
        if isinstance(sid, str) and sid.strip():
            ids.add(sid.strip())
        sf = entry.get("sessionFile")
        if isinstance(sf, str) and sf.strip():
            files.add(os.path.basename(sf.strip()))
    return ids, files


def recover_orphans(
    store_path: str,
    agent_id: str,
    *,
    lock_factory: LockFactory = FileLock,
) -> int:
    """Insert registry entries for transcripts no entry points at. Returns the number recovered.

    Archived transcripts (`*.jsonl.reset.*`) are never recovered. A registry
    file that is missing or not a JSON object is left alone.
    """
    sessions_dir = os.path.dirname(os.path.abspath(store_path))
    if not os.path.isfile(store_path) or not os.path.isdir(sessions_dir):
        return 0
    candidates = sorted(
        name
        for name in os.listdir(sessions_dir)
        if name.endswith(TRANSCRIPT_SUFFIX) and RESET_ARCHIVE_MARKER not in name and len(name) > len(TRANSCRIPT_SUFFIX)
    )
    if not candidates:
        return 0

    with lock_factory(store_path):
        store = read_json_with_fallback(store_path, None)
        if not isinstance(store, dict):
            return 0
        ids, files = _referenced(store)
        recovered = 0
        for name in candidates:
            session_id = name[: -len(TRANSCRIPT_SUFFIX)]
            if session_id in ids or name in files:
                continue
            key = recovered_session_key(agent_id, session_id)
            if key in store:
                continue
            try:
                mtime = int(os.path.getmtime(os.path.join(sessions_dir, name)) * 1000)
            except OSError:
                continue
            store[key] = {"sessionId": session_id, "sessionFile": name, "updatedAt": mtime}
            recovered += 1
        if recovered:
            write_json_atomically(store_path, store)
        return recovered


class OrphanRecovery:
    """Runs recover_orphans at most once per registry path for the life of the process."""

    def __init__(self, lock_factory: LockFactory = FileLock):
        self.lock_factory = lock_factory
        self._done: Set[str] = set()
        self._mu = threading.Lock()

    def has_run(self, store_path: str) -> bool:
        with self._mu:
            return os.path.abspath(store_path) in self._done

    def run_once(self, store_path: str, agent_id: str) -> Optional[int]:
        path = os.path.abspath(store_path)
        with self._mu:
            if path in self._done:
                return None
            self._done.add(path)
        try:
            recovered = recover_orphans(path, agent_id, lock_factory=self.lock_factory)
        except Exception as e:
            log.warning(kv_line("orphan-recovery failed", store=path, err=e))
            return 0
        if recovered:
            log.info(kv_line("orphan-recovery", recovered=recovered, agent=agent_id, store=path))
        else:
            log.debug(kv_line("orphan-recovery", recovered=0, agent=agent_id, store=path))
        return recovered
