# classifier.py
"""Topic-shift decision state machine.

Decisions per classified message:
    warmup       not enough retained history/baseline to judge
    stable       same topic (or cooldown after a rotation)
    suspect      soft shift signal, awaiting consecutive confirmation
    rotate-soft  soft signal confirmed N times in a row
    rotate-hard  single-message shift strong enough to rotate immediately
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional

from .config import ResolvedConfig
from .embeddings import LEXICAL_SOFT_DISTANCE, reset_centroid, update_centroid
from .lexical import LexicalFeatures, union_tokens
from .session_state import HistoryEntry, SessionState, trim_tail

EMBED_SIMILARITY_WEIGHT = 0.70
EMBED_DISTANCE_WEIGHT = 0.15
EMBED_NOVELTY_WEIGHT = 0.15
LEXICAL_HARD_DISTANCE = 0.90

WARMUP = "warmup"
STABLE = "stable"
SUSPECT = "suspect"
ROTATE_SOFT = "rotate-soft"
ROTATE_HARD = "rotate-hard"
ROTATE_KINDS = (ROTATE_SOFT, ROTATE_HARD)


@dataclass(frozen=True)
class ClassifierMetrics:
    score: float
    novelty: float
    lexical_distance: float
    unique_token_ratio: float
    entropy: float
    similarity: Optional[float]
    used_embedding: bool
    pending_soft_signals: int


@dataclass(frozen=True)
class Decision:
    kind: str
    reason: str
    metrics: ClassifierMetrics

    @property
    def is_rotation(self) -> bool:
        return self.kind in ROTATE_KINDS


def baseline_tokens(state: SessionState) -> set:
    return union_tokens(e.tokens for e in state.history)


def fused_score(features: LexicalFeatures, similarity: Optional[float]) -> float:
    if similarity is None:
        return features.score
    return (
        EMBED_SIMILARITY_WEIGHT * (1.0 - similarity)
        + EMBED_DISTANCE_WEIGHT * features.distance
        + EMBED_NOVELTY_WEIGHT * features.novelty
    )


def cooldown_active(cfg: ResolvedConfig, state: SessionState, now: int) -> bool:
    cooldown_ms = cfg.cooldown_minutes * 60_000
    return cooldown_ms > 0 and state.last_reset_at is not None and now - state.last_reset_at < cooldown_ms


def classify_message(
    cfg: ResolvedConfig,
    state: SessionState,
    features: LexicalFeatures,
    similarity: Optional[float],
    now: int,
) -> Decision:
    """Pure decision step; does not mutate `state`."""
    used_embedding = similarity is not None
    score = fused_score(features, similarity)
    metrics = ClassifierMetrics(
        score=score,
        novelty=features.novelty,
        lexical_distance=features.distance,
        unique_token_ratio=features.unique_ratio,
        entropy=features.entropy,
        similarity=similarity,
        used_embedding=used_embedding,
        pending_soft_signals=state.pending_soft_signals,
    )

    if len(state.history) < cfg.min_history_messages or features.baseline_size < cfg.min_meaningful_tokens:
        return Decision(WARMUP, "warmup", metrics)

    if cooldown_active(cfg, state, now):
        return Decision(STABLE, "cooldown", metrics)

    novelty = features.novelty
    distance = features.distance

    hard = (
        score >= cfg.hard_score_threshold
        or (used_embedding and similarity <= cfg.hard_similarity_threshold and novelty >= cfg.hard_novelty_threshold)
        or (not used_embedding and novelty >= cfg.hard_novelty_threshold and distance >= LEXICAL_HARD_DISTANCE)
    )
    if hard:
        return Decision(ROTATE_HARD, "hard-threshold", metrics)

    soft = (
        score >= cfg.soft_score_threshold
        or (used_embedding and similarity <= cfg.soft_similarity_threshold and novelty >= cfg.soft_novelty_threshold)
        or (not used_embedding and novelty >= cfg.soft_novelty_threshold and distance >= LEXICAL_SOFT_DISTANCE)
    )
    if not soft:
        return Decision(STABLE, "stable", metrics)

    if state.pending_soft_signals + 1 >= cfg.soft_consecutive_signals:
        return Decision(ROTATE_SOFT, "soft-confirmed", metrics)
    return Decision(SUSPECT, "soft-suspect", metrics)


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

def commit_entries(state: SessionState, entries: List[HistoryEntry], cfg: ResolvedConfig) -> None:
    for entry in entries:
        update_centroid(state, entry.embedding)
    state.history = trim_tail(state.history + entries, cfg.history_window)


def apply_decision(state: SessionState, decision: Decision, entry: HistoryEntry, cfg: ResolvedConfig) -> None:
    """Bookkeeping for warmup/stable/suspect outcomes."""
    if decision.kind == WARMUP:
        state.pending_soft_signals = 0
        state.pending_entries = []
        commit_entries(state, [entry], cfg)
    elif decision.kind == STABLE:
        merged = state.pending_entries + [entry]
        state.pending_soft_signals = 0
        state.pending_entries = []
        commit_entries(state, merged, cfg)
    elif decision.kind == SUSPECT:
        state.pending_soft_signals = min(state.pending_soft_signals + 1, cfg.soft_consecutive_signals)
        state.pending_entries = trim_tail(state.pending_entries + [entry], cfg.soft_consecutive_signals)


def reset_after_rotation(state: SessionState, decision: Decision, entry: HistoryEntry, cfg: ResolvedConfig, now: int) -> None:
    """Start a fresh topic window seeded from the message(s) that triggered the rotation."""
    if decision.kind == ROTATE_SOFT:
        seed = state.pending_entries + [entry]
    else:
        seed = [entry]
    state.last_reset_at = now
    state.pending_soft_signals = 0
    state.pending_entries = []
    state.pending_steer = None
    state.history = []
    reset_centroid(state)
    commit_entries(state, seed, cfg)


def downgrade_to_suspect(decision: Decision, reason: str) -> Decision:
    return replace(decision, kind=SUSPECT, reason=reason)
