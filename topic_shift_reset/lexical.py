# lexical.py
"""Lexical topic features computed against a session's token baseline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Iterable, List, Sequence, Set

from .config import ResolvedConfig

NOVELTY_WEIGHT = 0.55
DISTANCE_WEIGHT = 0.45
MIN_PENALTY = 0.5


@dataclass(frozen=True)
class LexicalFeatures:
    similarity: float
    distance: float
    novelty: float
    unique_ratio: float
    entropy: float
    score: float
    baseline_size: int


def union_tokens(token_sets: Iterable[AbstractSet[str]]) -> Set[str]:
    combined: Set[str] = set()
    for tokens in token_sets:
        combined.update(tokens)
    return combined


def jaccard_similarity(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    overlap = len(left & right)
    union = len(left) + len(right) - overlap
    if union <= 0:
        return 0.0
    return overlap / union


def novelty_ratio(current: AbstractSet[str], baseline: AbstractSet[str]) -> float:
    """Share of the message's tokens that the baseline has never seen."""
    if not current:
        return 0.0
    unseen = sum(1 for t in current if t not in baseline)
    return unseen / len(current)


def unique_token_ratio(token_list: Sequence[str]) -> float:
    if not token_list:
        return 0.0
    return len(set(token_list)) / len(token_list)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def lexical_score(novelty: float, distance: float, unique_ratio: float, entropy: float, cfg: ResolvedConfig) -> float:
    """Composite lexical shift score in [0, 1].

    Repetitive (low unique ratio) or low-entropy text is scaled down, never below
    half of the raw blend.
    """
    score = NOVELTY_WEIGHT * novelty + DISTANCE_WEIGHT * distance
    if cfg.min_unique_token_ratio > 0 and unique_ratio < cfg.min_unique_token_ratio:
        score *= max(MIN_PENALTY, unique_ratio / cfg.min_unique_token_ratio)
    if cfg.low_entropy_floor > 0 and entropy < cfg.low_entropy_floor:
        score *= max(MIN_PENALTY, entropy / cfg.low_entropy_floor)
    return clamp01(score)


def compute_features(
    token_list: List[str],
    tokens: AbstractSet[str],
    baseline: AbstractSet[str],
    entropy: float,
    cfg: ResolvedConfig,
) -> LexicalFeatures:
    similarity = jaccard_similarity(tokens, baseline)
    distance = 1.0 - similarity
    novelty = novelty_ratio(tokens, baseline)
    unique = unique_token_ratio(token_list)
    return LexicalFeatures(
        similarity=similarity,
        distance=distance,
        novelty=novelty,
        unique_ratio=unique,
        entropy=entropy,
        score=lexical_score(novelty, distance, unique, entropy, cfg),
        baseline_size=len(baseline),
    )
