# registry.py
"""Locked read-modify-write access to the host's session registry.

The registry is a JSON map of session key -> entry owned by the host. This
module only ever rewrites an existing entry's identity/counter fields (and,
for orphan recovery, inserts namespaced recovered entries); unknown fields
are carried through untouched.
"""

from __future__ import annotations

import json
import os
import random
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .session_state import now_ms

LOCK_RETRIES = 8
LOCK_FACTOR = 1.35
LOCK_MIN_TIMEOUT_MS = 20
LOCK_MAX_TIMEOUT_MS = 250
LOCK_STALE_MS = 45_000

RECLAIM_SUFFIX = ".reclaim"
RESET_ARCHIVE_MARKER = ".reset."


class RegistryLockError(RuntimeError):
    """Registry lock could not be acquired within the retry budget."""


# ---------------------------------------------------------------------------
# JSON file helpers
# ---------------------------------------------------------------------------

def read_json_with_fallback(path: str, fallback: Any) -> Any:
    """Load JSON from path; a missing, unreadable or corrupt file yields `fallback`."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return fallback
    except (OSError, ValueError):
        return fallback


def write_json_atomically(path: str, value: Any) -> None:
    """Write JSON to a temp file in the same directory, fsync, then rename over `path`."""
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    tmp = os.path.join(folder, f".{os.path.basename(path)}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(json.dumps(value, indent=2, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# File lock
# ---------------------------------------------------------------------------

_PROCESS_LOCKS: Dict[str, threading.Lock] = {}
_PROCESS_LOCKS_MU = threading.Lock()


def _process_lock(path: str) -> threading.Lock:
    with _PROCESS_LOCKS_MU:
        lock = _PROCESS_LOCKS.get(path)
        if lock is None:
            lock = threading.Lock()
            _PROCESS_LOCKS[path] = lock
        return lock


class FileLock:
    """Exclusive lock on `<path>.lock` (create-exclusive, pid + timestamp payload).

    Retries with randomized exponential backoff. A lock file older than
    `stale_ms` is presumed abandoned and reclaimed. Threads of this process
    queue on an in-process lock first so they do not spin on the file.
    """

    def __init__(
        self,
        path: str,
        *,
        retries: int = LOCK_RETRIES,
        factor: float = LOCK_FACTOR,
        min_timeout_ms: int = LOCK_MIN_TIMEOUT_MS,
        max_timeout_ms: int = LOCK_MAX_TIMEOUT_MS,
        randomize: bool = True,
        stale_ms: int = LOCK_STALE_MS,
    ):
        self.path = os.path.abspath(path)
        self.lock_path = self.path + ".lock"
        self.retries = retries
        self.factor = factor
        self.min_timeout_ms = min_timeout_ms
        self.max_timeout_ms = max_timeout_ms
        self.randomize = randomize
        self.stale_ms = stale_ms
        self._proc_lock = _process_lock(self.path)
        self._held = False

    def _backoff_seconds(self, attempt: int) -> float:
        delay = self.min_timeout_ms * (self.factor ** attempt)
        if self.randomize:
            delay *= 1.0 + random.random()
        return min(delay, self.max_timeout_ms) / 1000.0

    def _is_stale(self, st: os.stat_result) -> bool:
        return (time.time() - st.st_mtime) * 1000 > self.stale_ms

    def _take_reclaim_guard(self) -> bool:
        guard = self.lock_path + RECLAIM_SUFFIX
        for _ in range(2):
            try:
                os.close(os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644))
                return True
            except FileExistsError:
                pass
            try:
                # A reclaimer that died mid-reclaim leaves its guard behind.
                if not self._is_stale(os.stat(guard)):
                    return False
                os.remove(guard)
            except FileNotFoundError:
                continue
            except OSError:
                return False
        return False

    def _reclaim(self, observed: os.stat_result) -> bool:
        """Remove the lock file, but only if it is still the stale file that was observed.

        Reclaimers serialize on `<lock>.reclaim`, so no two of them can decide on
        the same stale file, and a fresh lock created after `observed` is left alone.
        """
        if not self._take_reclaim_guard():
            return False
        try:
            try:
                current = os.stat(self.lock_path)
            except FileNotFoundError:
                return True
            if (current.st_ino, current.st_mtime_ns) != (observed.st_ino, observed.st_mtime_ns):
                return False
            os.remove(self.lock_path)
            return True
        except OSError:
            return False
        finally:
            try:
                os.remove(self.lock_path + RECLAIM_SUFFIX)
            except OSError:
                pass

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps({"pid": os.getpid(), "createdAt": now_ms()}))
        return True

    def acquire(self) -> None:
        if not self._proc_lock.acquire(timeout=self.stale_ms / 1000.0):
            raise RegistryLockError(f"lock busy in-process: {self.lock_path}")
        try:
            os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
            attempt = 0
            while True:
                if self._try_create():
                    self._held = True
                    return
                try:
                    observed = os.stat(self.lock_path)
                except FileNotFoundError:
                    continue
                if self._is_stale(observed) and self._reclaim(observed):
                    continue
                if attempt >= self.retries:
                    raise RegistryLockError(f"lock not acquired after {attempt} retries: {self.lock_path}")
                time.sleep(self._backoff_seconds(attempt))
                attempt += 1
        except BaseException:
            self._proc_lock.release()
            raise

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass
        finally:
            self._proc_lock.release()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


LockFactory = Callable[[str], FileLock]


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

@dataclass
class RotationResult:
    rotated: bool
    reason: str = ""
    store_key: Optional[str] = None
    previous_entry: Optional[Dict[str, Any]] = None
    new_session_id: Optional[str] = None


def find_store_key(store: Dict[str, Any], session_key: str) -> Optional[str]:
    if session_key in store:
        return session_key
    wanted = session_key.lower()
    for key in store:
        if key.lower() == wanted:
            return key
    return None


def rotated_entry(current: Dict[str, Any], now: int) -> Dict[str, Any]:
    nxt = dict(current)
    nxt.update(
        {
            "sessionId": str(uuid.uuid4()),
            "updatedAt": now,
            "systemSent": False,
            "abortedLastRun": False,
            "inputTokens": 0,
            "outputTokens": 0,
            "totalTokens": 0,
            "totalTokensFresh": True,
        }
    )
    nxt.pop("sessionFile", None)
    return nxt


def rotate_registry_entry(
    store_path: str,
    session_key: str,
    *,
    now: Optional[int] = None,
    lock_factory: LockFactory = FileLock,
) -> RotationResult:
    """Give the registry entry for `session_key` a fresh identity under the registry lock."""
    now = now_ms() if now is None else now
    with lock_factory(store_path):
        store = read_json_with_fallback(store_path, {})
        if not isinstance(store, dict):
            store = {}
        store_key = find_store_key(store, session_key)
        if store_key is None:
            return RotationResult(False, reason="no-session-entry")
        current = store.get(store_key)
        if not isinstance(current, dict):
            return RotationResult(False, reason="invalid-session-entry", store_key=store_key)

        nxt = rotated_entry(current, now)
        store[store_key] = nxt
        write_json_atomically(store_path, store)
        return RotationResult(
            True,
            reason="rotated",
            store_key=store_key,
            previous_entry=dict(current),
            new_session_id=nxt["sessionId"],
        )


# ---------------------------------------------------------------------------
# Transcript files
# ---------------------------------------------------------------------------

def resolve_session_file(store_path: str, entry: Optional[Dict[str, Any]]) -> Optional[str]:
    """Transcript path for a registry entry (explicit sessionFile, else `<sessionId>.jsonl`)."""
    if not isinstance(entry, dict):
        return None
    sessions_dir = os.path.dirname(os.path.abspath(store_path))
    session_file = entry.get("sessionFile")
    if isinstance(session_file, str) and session_file.strip():
        session_file = session_file.strip()
        if os.path.isabs(session_file):
            return session_file
        return os.path.abspath(os.path.join(sessions_dir, session_file))
    session_id = entry.get("sessionId")
    if isinstance(session_id, str) and session_id.strip():
        return os.path.join(sessions_dir, f"{session_id.strip()}.jsonl")
    return None


def archive_transcript(path: str, now: Optional[int] = None) -> Optional[str]:
    """Rename a rotated-away transcript to `<file>.reset.<UTC stamp>`; None if it does not exist."""
    if not path or not os.path.isfile(path):
        return None
    now = now_ms() if now is None else now
    stamp = time.strftime("%Y-%m-%dT%H-%M-%S", time.gmtime(now / 1000.0)) + f".{now % 1000:03d}Z"
    target = f"{path}{RESET_ARCHIVE_MARKER}{stamp}"
    n = 1
    while os.path.exists(target):
        target = f"{path}{RESET_ARCHIVE_MARKER}{stamp}-{n}"
        n += 1
    os.replace(path, target)
    return target
