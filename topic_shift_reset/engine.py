# engine.py
"""Topic-shift engine: per-session classification and registry rotation.

Host-facing entry points:
    on_message_received  channel event -> route -> on_message
    on_message           classify one user message for a session key
    on_message_sent      successful outbound agent text -> context only
    before_prompt_build  one-shot clarification steer (prepend context)
    start / shutdown     snapshot restore / bounded final flush

Nothing raised inside the pipeline escapes to the host; failures are logged
and degrade to "no rotation".
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .classifier import (
    STABLE,
    SUSPECT,
    WARMUP,
    ROTATE_SOFT,
    Decision,
    apply_decision,
    baseline_tokens,
    classify_message,
    commit_entries,
    downgrade_to_suspect,
    reset_after_rotation,
)
from .config import ResolvedConfig
from .embeddings import EmbeddingBackend, cosine_similarity, resolve_backend, should_request_embedding
from .handoff import build_handoff
from .lexical import compute_features
from .logging_utils import get_logger, kv_line, safe_preview, short_hash
from .persistence import OrphanRecovery, StatePersister, build_snapshot, serialize_state, snapshot_path
from .registry import FileLock, LockFactory, archive_transcript, resolve_session_file, rotate_registry_entry
from .routing import Peer, Route, default_route, infer_peer
from .session_state import (
    HistoryEntry,
    RecentMap,
    SessionState,
    SessionStore,
    now_ms,
)
from .signals import SignalSample, SkipReason, content_fingerprint, extract_signal
from .steering import (
    arm_steer,
    expire_steer,
    observe_user_reply,
    steering_enabled,
    strict_gate_blocks,
    try_consume_steer,
)

log = get_logger()

ROTATION_DEDUPE_MS = 25_000
FAST_EVENT_TTL_MS = 5 * 60 * 1000
CONTEXT_KEY_PREFIX = "topic-shift-reset"
DEFAULT_AGENT_ID = "main"


@dataclass(frozen=True)
class MessageEvent:
    session_key: str
    text: str
    provider: str = ""
    agent_id: str = ""
    source: str = "fast"  # fast | fallback


@dataclass
class HostPorts:
    """Collaborators supplied by the message host."""

    resolve_store_path: Callable[[str], str]
    enqueue_system_event: Callable[[str, str, str], None]  # (text, session_key, context_key)
    resolve_route: Optional[Callable[[str, Optional[str], Peer, Optional[str]], Route]] = None
    resolve_state_dir: Optional[Callable[[], str]] = None


def agent_id_from_session_key(session_key: str) -> str:
    parts = (session_key or "").split(":")
    if len(parts) >= 2 and parts[0].lower() == "agent" and parts[1].strip():
        return parts[1].strip().lower()
    return DEFAULT_AGENT_ID


class TopicShiftEngine:
    def __init__(
        self,
        cfg: ResolvedConfig,
        ports: HostPorts,
        *,
        clock: Callable[[], int] = now_ms,
        backend_factory: Callable[[ResolvedConfig], Optional[EmbeddingBackend]] = resolve_backend,
        lock_factory: LockFactory = FileLock,
    ):
        self.cfg = cfg
        self.ports = ports
        self.clock = clock
        self.lock_factory = lock_factory
        self.store = SessionStore()
        self.recent_rotations = RecentMap(ROTATION_DEDUPE_MS * 3)
        self.recent_fast_events = RecentMap(FAST_EVENT_TTL_MS)
        self.orphans = OrphanRecovery(lock_factory)
        self.persister: Optional[StatePersister] = None
        self.backend = self._init_backend(backend_factory)
        self._started = False
        self._start_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _init_backend(self, factory: Callable[[ResolvedConfig], Optional[EmbeddingBackend]]) -> Optional[EmbeddingBackend]:
        try:
            backend = factory(self.cfg)
        except Exception as e:
            log.warning(f"topic-shift-reset: embedding backend init failed: {e}")
            return None
        if backend is None:
            if self.cfg.embedding.provider == "none":
                log.info("topic-shift-reset: embedding backend disabled, using lexical-only mode")
            else:
                log.warning("topic-shift-reset: embedding backend unavailable, using lexical-only mode")
            return None
        log.info(f"topic-shift-reset: embedding backend {backend.name}")
        return backend

    @property
    def embedding_backend_name(self) -> str:
        return self.backend.name if self.backend is not None else "none"

    def start(self) -> None:
        """Restore the persisted snapshot once. Safe to call repeatedly."""
        with self._start_lock:
            if self._started:
                return
            self._started = True
            self.persister = self._init_persister()
            if self.persister is None:
                return
            snap = self.persister.load(self.cfg.history_window, self.cfg.soft_consecutive_signals)
            if snap is None:
                return
            self.store.replace_all(snap.states)
            self.recent_rotations.load(snap.recent_rotations)
            now = self.clock()
            self.store.prune(now)
            self.recent_rotations.prune(now)
            log.info(kv_line("restored state", sessions=len(self.store), rotations=len(self.recent_rotations)))

    def _init_persister(self) -> Optional[StatePersister]:
        if not self.cfg.persistence_enabled or self.ports.resolve_state_dir is None:
            return None
        try:
            state_dir = self.ports.resolve_state_dir()
        except Exception as e:
            log.debug(kv_line("persistence disabled", err=e))
            return None
        if not state_dir:
            return None
        return StatePersister(snapshot_path(state_dir), self._snapshot_doc, self.cfg.persistence_debounce_seconds)

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        if self.persister is None:
            return True
        if timeout is None:
            timeout = self.cfg.persistence_shutdown_timeout_seconds
        return self.persister.close(timeout)

    def _snapshot_doc(self) -> Dict[str, Any]:
        doc = build_snapshot({}, self.recent_rotations.to_dict(), self.clock())
        for key, state in self.store.items():
            with self.store.locked(key):
                doc["sessionStateBySessionKey"][key] = serialize_state(state)
        return doc

    def _persist(self, urgent: bool = False) -> None:
        if self.persister is None:
            return
        if urgent:
            self.persister.flush_soon()
        else:
            self.persister.schedule()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def on_message_received(
        self,
        channel: str,
        text: str,
        *,
        sender: Optional[str] = None,
        conversation_id: Optional[str] = None,
        account_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
    ) -> Optional[Decision]:
        """Channel-level user message: dedupe repeated deliveries, route, classify."""
        if not self.cfg.enabled:
            return None
        channel = (channel or "").strip()
        text = (text or "").strip()
        if not channel or not text:
            return None

        peer = infer_peer(sender, conversation_id, metadata)
        now = self.clock()
        fast_key = "|".join([channel, account_id or "", peer.kind, peer.id, content_fingerprint(text)])
        if self.recent_fast_events.check_and_mark(fast_key, FAST_EVENT_TTL_MS, now):
            return None
        self.recent_fast_events.prune(now)

        try:
            if self.ports.resolve_route is not None:
                route = self.ports.resolve_route(channel, account_id, peer, agent_id)
            else:
                route = default_route(agent_id, channel, account_id, peer)
        except Exception as e:
            log.debug(kv_line("route-skip", channel=channel, peer=f"{peer.kind}:{peer.id}", err=e))
            return None

        return self.on_message(
            MessageEvent(
                session_key=route.session_key,
                text=text,
                provider=channel,
                agent_id=route.agent_id,
                source="fast",
            )
        )

    def on_message(self, event: MessageEvent) -> Optional[Decision]:
        """Classify one user message. Returns the decision, or None when the message was skipped."""
        try:
            return self._on_message(event)
        except Exception as e:
            log.warning(kv_line("classify failed", session=event.session_key, err=e))
            return None

    def _on_message(self, event: MessageEvent) -> Optional[Decision]:
        cfg = self.cfg
        if not cfg.enabled:
            return None
        key = (event.session_key or "").strip()
        if not key:
            return None
        if cfg.is_ignored_provider(event.provider):
            log.debug(kv_line("skip-provider", provider=event.provider, session=key))
            return None

        self.start()

        sample = extract_signal(event.text, cfg)
        if isinstance(sample, SkipReason):
            log.debug(
                kv_line(
                    "skip-low-signal",
                    source=event.source,
                    session=key,
                    reason=sample.reason,
                    chars=sample.chars,
                    tokens=sample.token_count,
                    entropy=sample.entropy,
                )
            )
            return None

        now = self.clock()
        dedupe_key = f"{key}:{sample.fingerprint}"
        if self.recent_rotations.seen_within(dedupe_key, ROTATION_DEDUPE_MS, now):
            log.debug(kv_line("skip-rotation-dedupe", session=key, hash=sample.fingerprint))
            return None

        agent_id = (event.agent_id or "").strip().lower() or agent_id_from_session_key(key)
        store_path = self._store_path(agent_id)
        if store_path:
            self.orphans.run_once(store_path, agent_id)

        rotated = False
        with self.store.locked(key):
            state = self.store.get_or_create(key, now)
            state.last_seen_at = now
            decision, entry = self._classify(key, state, sample, now, event.source)
            if decision.is_rotation:
                rotated = self._rotate(key, store_path, state, decision, entry, sample, now, event.source)
                if rotated:
                    self.recent_rotations.mark(dedupe_key, now)
            else:
                apply_decision(state, decision, entry, cfg)
            self.store.put(key, state)

        self.store.prune(now)
        self.recent_rotations.prune(now)
        self._persist(urgent=rotated)
        return decision

    def _store_path(self, agent_id: str) -> Optional[str]:
        try:
            return self.ports.resolve_store_path(agent_id) or None
        except Exception as e:
            log.warning(kv_line("store path unresolved", agent=agent_id, err=e))
            return None

    def _embed(self, text: str) -> Optional[List[float]]:
        backend = self.backend
        if backend is None:
            return None
        try:
            vector = backend.embed(text)
        except Exception as e:
            log.warning(kv_line("embeddings error", backend=backend.name, err=e))
            return None
        return vector or None

    def _classify(self, key: str, state: SessionState, sample: SignalSample, now: int, source: str):
        cfg = self.cfg
        features = compute_features(sample.token_list, sample.tokens, baseline_tokens(state), sample.entropy, cfg)

        embedding = None
        similarity = None
        if self.backend is not None and should_request_embedding(features.score, features.novelty, features.distance, cfg):
            embedding = self._embed(sample.text)
            if embedding is not None:
                similarity = cosine_similarity(embedding, state.topic_centroid)

        entry = HistoryEntry(
            tokens=frozenset(sample.tokens),
            at=now,
            embedding=tuple(embedding) if embedding else None,
        )
        decision = classify_message(cfg, state, features, similarity, now)
        decision = self._steer(state, decision, now)

        m = decision.metrics
        log.debug(
            kv_line(
                "classify",
                source=source,
                kind=decision.kind,
                reason=decision.reason,
                session=key,
                score=m.score,
                novelty=m.novelty,
                lex=m.lexical_distance,
                sim=m.similarity,
                embed=m.used_embedding,
                pending=state.pending_soft_signals,
                textHash=short_hash(sample.text),
                tokens=len(sample.token_list),
                text=safe_preview(sample.text, 80),
            )
        )
        return decision, entry

    def _steer(self, state: SessionState, decision: Decision, now: int) -> Decision:
        cfg = self.cfg
        ticket = expire_steer(state.pending_steer, now)
        ticket = observe_user_reply(ticket, now)
        state.pending_steer = ticket

        if decision.kind == ROTATE_SOFT and strict_gate_blocks(cfg, ticket):
            decision = downgrade_to_suspect(decision, "soft-awaiting-clarification")
            if ticket is None:
                state.pending_steer = arm_steer(cfg, now)
        elif decision.kind == SUSPECT:
            if steering_enabled(cfg) and ticket is None:
                state.pending_steer = arm_steer(cfg, now)
        elif decision.kind in (STABLE, WARMUP):
            state.pending_steer = None
        return decision

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _rotate(
        self,
        key: str,
        store_path: Optional[str],
        state: SessionState,
        decision: Decision,
        entry: HistoryEntry,
        sample: SignalSample,
        now: int,
        source: str,
    ) -> bool:
        cfg = self.cfg
        m = decision.metrics
        metrics = dict(score=m.score, novelty=m.novelty, lex=m.lexical_distance, sim=m.similarity)

        if cfg.dry_run:
            reset_after_rotation(state, decision, entry, cfg, now)
            log.info(kv_line("dry-run rotate", source=source, reason=decision.reason, session=key, **metrics))
            return True

        if not store_path:
            reset_after_rotation(state, decision, entry, cfg, now)
            log.warning(kv_line("rotate failed", reason="no-store-path", session=key))
            return False

        try:
            result = rotate_registry_entry(store_path, key, now=now, lock_factory=self.lock_factory)
        except Exception as e:
            reset_after_rotation(state, decision, entry, cfg, now)
            log.warning(kv_line("rotate failed", reason="registry-error", session=key, err=e))
            return False

        if not result.rotated:
            # Reset anyway so the next message is not judged against the stale window.
            reset_after_rotation(state, decision, entry, cfg, now)
            log.warning(kv_line("rotate failed", reason=result.reason, session=key))
            return False

        handoff = build_handoff(cfg, store_path, result.previous_entry)
        if handoff:
            try:
                self.ports.enqueue_system_event(handoff, key, f"{CONTEXT_KEY_PREFIX}:{sample.fingerprint}")
            except Exception as e:
                log.warning(kv_line("handoff enqueue failed", session=key, err=e))
                handoff = None

        archived = self._archive(store_path, result.previous_entry, now)
        reset_after_rotation(state, decision, entry, cfg, now)
        log.info(
            kv_line(
                "rotated",
                source=source,
                reason=decision.reason,
                session=key,
                **metrics,
                handoff=bool(handoff),
                archived=bool(archived),
            )
        )
        return True

    def _archive(self, store_path: str, previous_entry: Optional[Dict[str, Any]], now: int) -> Optional[str]:
        path = resolve_session_file(store_path, previous_entry)
        if not path:
            return None
        try:
            return archive_transcript(path, now)
        except OSError as e:
            log.warning(kv_line("archive failed", file=path, err=e))
            return None

    # ------------------------------------------------------------------
    # Outbound / prompt build
    # ------------------------------------------------------------------

    def on_message_sent(
        self,
        session_key: str,
        text: str,
        *,
        success: bool = True,
        provider: str = "",
    ) -> bool:
        """Fold successful agent output into the session's context window. Never classifies."""
        cfg = self.cfg
        key = (session_key or "").strip()
        if not cfg.enabled or not success or not key:
            return False
        if cfg.is_ignored_provider(provider):
            return False
        sample = extract_signal(text, cfg)
        if isinstance(sample, SkipReason):
            return False

        self.start()
        now = self.clock()
        with self.store.locked(key):
            state = self.store.get_or_create(key, now)
            state.last_seen_at = now
            if state.pending_soft_signals > 0:
                # The suspect message stays outside the baseline until the next user message decides it.
                log.debug(kv_line("skip-outbound-pending", session=key, pending=state.pending_soft_signals))
                return False
            commit_entries(state, [HistoryEntry(tokens=frozenset(sample.tokens), at=now)], cfg)
            self.store.put(key, state)
        self.store.prune(now)
        self._persist()
        return True

    def before_prompt_build(self, session_key: str) -> Optional[str]:
        """Clarification prompt to prepend for this turn, handed out once per ticket."""
        cfg = self.cfg
        key = (session_key or "").strip()
        if not cfg.enabled or not key or not steering_enabled(cfg):
            return None
        if self.store.get(key) is None:
            return None
        now = self.clock()
        with self.store.locked(key):
            state = self.store.get(key)
            if state is None:
                return None
            before = state.pending_steer
            prompt, state.pending_steer = try_consume_steer(before, now, cfg.soft_suspect.prompt)
            changed = state.pending_steer != before
        if prompt:
            log.info(kv_line("steer injected", session=key, mode=cfg.soft_suspect.mode))
        if changed:
            self._persist()
        return prompt
