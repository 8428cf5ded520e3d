# embeddings.py
"""Embedding backends and topic-centroid math."""

from __future__ import annotations

import math
import os
from typing import Any, Dict, List, Optional, Sequence

import requests

from .config import ResolvedConfig
from .session_state import SessionState

LEXICAL_SOFT_DISTANCE = 0.45


class EmbeddingError(RuntimeError):
    """Backend returned an unusable response (non-2xx, malformed or empty vector)."""


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class EmbeddingBackend:
    name = "none"

    def embed(self, text: str) -> Optional[List[float]]:
        raise NotImplementedError


def _post_json(endpoint: str, payload: Dict[str, Any], headers: Dict[str, str], timeout_ms: int, label: str) -> Dict[str, Any]:
    resp = requests.post(endpoint, json=payload, headers=headers, timeout=timeout_ms / 1000.0)
    if resp.status_code < 200 or resp.status_code >= 300:
        body = (resp.text or "")[:240]
        raise EmbeddingError(f"{label} embeddings failed ({resp.status_code}): {body}")
    try:
        data = resp.json()
    except ValueError as e:
        raise EmbeddingError(f"{label} embeddings returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EmbeddingError(f"{label} embeddings returned unexpected payload")
    return data


def _as_vector(raw: Any, label: str) -> List[float]:
    if not isinstance(raw, list) or not raw:
        raise EmbeddingError(f"{label} embeddings returned empty vector")
    try:
        return [float(v) for v in raw]
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"{label} embeddings returned non-numeric vector") from e


class OpenAIBackend(EmbeddingBackend):
    def __init__(self, api_key: str, model: str = "text-embedding-3-small", base_url: str = "https://api.openai.com/v1", timeout_ms: int = 7000):
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/embeddings"
        self.timeout_ms = timeout_ms
        self.name = f"openai:{model}"

    def embed(self, text: str) -> Optional[List[float]]:
        data = _post_json(
            self.endpoint,
            {"model": self.model, "input": text},
            {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"},
            self.timeout_ms,
            "openai",
        )
        items = data.get("data") or []
        first = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
        return _as_vector(first.get("embedding"), "openai")


class OllamaBackend(EmbeddingBackend):
    def __init__(self, model: str = "nomic-embed-text", base_url: str = "http://127.0.0.1:11434", timeout_ms: int = 7000):
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/api/embeddings"
        self.timeout_ms = timeout_ms
        self.name = f"ollama:{model}"

    def embed(self, text: str) -> Optional[List[float]]:
        data = _post_json(
            self.endpoint,
            {"model": self.model, "prompt": text},
            {"Content-Type": "application/json"},
            self.timeout_ms,
            "ollama",
        )
        return _as_vector(data.get("embedding"), "ollama")


def create_openai_backend(cfg: ResolvedConfig) -> Optional[OpenAIBackend]:
    api_key = cfg.embedding.api_key or os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        return None
    return OpenAIBackend(
        api_key=api_key,
        model=cfg.embedding.model or "text-embedding-3-small",
        base_url=cfg.embedding.base_url or os.getenv("OPENAI_BASE_URL", "").strip() or "https://api.openai.com/v1",
        timeout_ms=cfg.embedding.timeout_ms,
    )


def create_ollama_backend(cfg: ResolvedConfig) -> OllamaBackend:
    return OllamaBackend(
        model=cfg.embedding.model or "nomic-embed-text",
        base_url=cfg.embedding.base_url or os.getenv("OLLAMA_HOST", "").strip() or "http://127.0.0.1:11434",
        timeout_ms=cfg.embedding.timeout_ms,
    )


def resolve_backend(cfg: ResolvedConfig) -> Optional[EmbeddingBackend]:
    """`none` -> None; explicit provider -> that provider; `auto` -> OpenAI when keyed, else Ollama."""
    provider = cfg.embedding.provider
    if provider == "none":
        return None
    if provider == "openai":
        return create_openai_backend(cfg)
    if provider == "ollama":
        return create_ollama_backend(cfg)
    openai = create_openai_backend(cfg)
    if openai is not None:
        return openai
    return create_ollama_backend(cfg)


# ---------------------------------------------------------------------------
# Gating + vector math
# ---------------------------------------------------------------------------

def should_request_embedding(score: float, novelty: float, distance: float, cfg: ResolvedConfig) -> bool:
    """Only ambiguous messages are worth a network call."""
    if score >= cfg.soft_score_threshold - cfg.embedding_gate_margin:
        return True
    return novelty >= cfg.soft_novelty_threshold and distance >= LEXICAL_SOFT_DISTANCE


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> Optional[float]:
    """Cosine similarity, or None when undefined (empty, mismatched or zero vectors)."""
    if not a or not b or len(a) != len(b):
        return None
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return None
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def reset_centroid(state: SessionState) -> None:
    state.topic_centroid = None
    state.topic_count = 0
    state.topic_dim = None


def update_centroid(state: SessionState, vector: Optional[Sequence[float]]) -> None:
    """Fold one accepted embedding into the session's running mean.

    A vector whose dimension differs from the centroid restarts the centroid.
    """
    if not vector:
        return
    dim = len(vector)
    if state.topic_centroid is None or state.topic_dim != dim or state.topic_count <= 0:
        state.topic_centroid = [float(v) for v in vector]
        state.topic_count = 1
        state.topic_dim = dim
        return
    n = state.topic_count + 1
    state.topic_centroid = [c + (float(v) - c) / n for c, v in zip(state.topic_centroid, vector)]
    state.topic_count = n
