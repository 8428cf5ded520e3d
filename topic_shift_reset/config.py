# config.py
"""Configuration management for topic-shift-reset."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

from .logging_utils import get_logger

log = get_logger()


# ---------------------------------------------------------------------------
# Config Loading
# ---------------------------------------------------------------------------

HERE = os.path.dirname(os.path.abspath(__file__))
DEFAULT_CONFIG_PATH = os.environ.get("TOPIC_SHIFT_CONFIG") or os.path.join(HERE, "topic_shift_config.yaml")


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


CFG: Dict[str, Any] = {}


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    global CFG
    try:
        CFG = _load_yaml(path)
    except Exception as e:
        CFG = {}
        log.warning(f"topic-shift-reset: failed to load config path={path} err={e}")
    return CFG


def cfg_get(path: str, default: Any) -> Any:
    """Get config value by dot-separated path (e.g., 'server.port')."""
    cur: Any = CFG
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

PRESET_MAP: Dict[str, Dict[str, Any]] = {
    "conservative": {
        "history_window": 12,
        "min_history_messages": 4,
        "min_meaningful_tokens": 7,
        "min_token_length": 2,
        "soft_consecutive_signals": 3,
        "cooldown_minutes": 10,
        "soft_score_threshold": 0.8,
        "hard_score_threshold": 0.92,
        "soft_similarity_threshold": 0.3,
        "hard_similarity_threshold": 0.18,
        "soft_novelty_threshold": 0.66,
        "hard_novelty_threshold": 0.8,
    },
    "balanced": {
        "history_window": 10,
        "min_history_messages": 3,
        "min_meaningful_tokens": 6,
        "min_token_length": 2,
        "soft_consecutive_signals": 2,
        "cooldown_minutes": 5,
        "soft_score_threshold": 0.72,
        "hard_score_threshold": 0.86,
        "soft_similarity_threshold": 0.36,
        "hard_similarity_threshold": 0.24,
        "soft_novelty_threshold": 0.58,
        "hard_novelty_threshold": 0.74,
    },
    "aggressive": {
        "history_window": 8,
        "min_history_messages": 2,
        "min_meaningful_tokens": 5,
        "min_token_length": 2,
        "soft_consecutive_signals": 1,
        "cooldown_minutes": 2,
        "soft_score_threshold": 0.64,
        "hard_score_threshold": 0.78,
        "soft_similarity_threshold": 0.46,
        "hard_similarity_threshold": 0.34,
        "soft_novelty_threshold": 0.48,
        "hard_novelty_threshold": 0.6,
    },
}

DEFAULTS: Dict[str, Any] = {
    "enabled": True,
    "preset": "balanced",
    "handoff": "summary",
    "handoff_last_n": 6,
    "handoff_max_chars": 220,
    "handoff_tail_bytes": 256 * 1024,
    "embedding_provider": "auto",
    "embedding_timeout_ms": 7000,
    "embedding_gate_margin": 0.15,
    "min_signal_chars": 20,
    "min_signal_token_count": 3,
    "min_signal_entropy": 1.2,
    "min_unique_token_ratio": 0.35,
    "low_entropy_floor": 2.0,
    "strip_envelope": True,
    "soft_suspect_action": "ask",
    "soft_suspect_mode": "best_effort",
    "soft_suspect_prompt": (
        "Before answering, briefly check whether the user is switching to a new topic "
        "or continuing the current one. If it is unclear, ask one short clarifying question."
    ),
    "soft_suspect_ttl_seconds": 600,
    "persistence_enabled": True,
    "persistence_debounce_seconds": 5.0,
    "persistence_shutdown_timeout_seconds": 5.0,
    "dry_run": False,
    "debug": False,
}

# Host-internal turns (scheduled jobs, heartbeats) never count as user topic signal.
INTERNAL_PROVIDERS: FrozenSet[str] = frozenset({"cron", "cron-event", "heartbeat", "system"})

DEFAULT_ENVELOPE_LINE_PREFIXES: Tuple[str, ...] = (
    "System: [",
    "Current time:",
    "Read HEARTBEAT.md if it exists",
    "To send an image back, prefer the message tool",
    "[media attached:",
)
DEFAULT_ENVELOPE_FENCE_HEADERS: Tuple[str, ...] = (
    "Conversation info (untrusted metadata):",
    "Replied message (untrusted, for context):",
)
DEFAULT_ENVELOPE_EXACT_LINES: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Resolved config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddingSettings:
    provider: str = "auto"
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    timeout_ms: int = 7000


@dataclass(frozen=True)
class SoftSuspectSettings:
    action: str = "ask"
    mode: str = "best_effort"
    prompt: str = DEFAULTS["soft_suspect_prompt"]
    ttl_seconds: int = 600


@dataclass(frozen=True)
class EnvelopeRules:
    line_prefixes: Tuple[str, ...] = DEFAULT_ENVELOPE_LINE_PREFIXES
    exact_lines: Tuple[str, ...] = DEFAULT_ENVELOPE_EXACT_LINES
    fence_headers: Tuple[str, ...] = DEFAULT_ENVELOPE_FENCE_HEADERS


@dataclass(frozen=True)
class ResolvedConfig:
    enabled: bool = True
    preset: str = "balanced"
    history_window: int = 10
    min_history_messages: int = 3
    min_meaningful_tokens: int = 6
    min_token_length: int = 2
    min_signal_chars: int = 20
    min_signal_token_count: int = 3
    min_signal_entropy: float = 1.2
    min_unique_token_ratio: float = 0.35
    low_entropy_floor: float = 2.0
    strip_envelope: bool = True
    envelope: EnvelopeRules = field(default_factory=EnvelopeRules)
    soft_consecutive_signals: int = 2
    cooldown_minutes: int = 5
    ignored_providers: FrozenSet[str] = frozenset()
    soft_score_threshold: float = 0.72
    hard_score_threshold: float = 0.86
    soft_similarity_threshold: float = 0.36
    hard_similarity_threshold: float = 0.24
    soft_novelty_threshold: float = 0.58
    hard_novelty_threshold: float = 0.74
    embedding_gate_margin: float = 0.15
    handoff_mode: str = "summary"
    handoff_last_n: int = 6
    handoff_max_chars: int = 220
    handoff_tail_bytes: int = 256 * 1024
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    soft_suspect: SoftSuspectSettings = field(default_factory=SoftSuspectSettings)
    persistence_enabled: bool = True
    persistence_debounce_seconds: float = 5.0
    persistence_shutdown_timeout_seconds: float = 5.0
    dry_run: bool = False
    debug: bool = False

    def is_ignored_provider(self, provider: str) -> bool:
        p = (provider or "").strip().lower()
        if not p:
            return False
        return p in self.ignored_providers or p in INTERNAL_PROVIDERS


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value and abs(value) != float("inf")


def clamp_int(value: Any, fallback: int, lo: int, hi: int) -> int:
    if not _is_number(value):
        return fallback
    n = int(math.floor(value))
    return max(lo, min(hi, n))


def clamp_float(value: Any, fallback: float, lo: float, hi: float) -> float:
    if not _is_number(value):
        return fallback
    return max(lo, min(hi, float(value)))


def _pick(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_str_tuple(value: Any, fallback: Tuple[str, ...]) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return fallback
    return tuple(str(v) for v in value if isinstance(v, str) and v.strip())


def normalize_preset(value: Any) -> str:
    n = _as_str(value).lower()
    return n if n in PRESET_MAP else DEFAULTS["preset"]


def normalize_embedding_provider(value: Any) -> str:
    n = _as_str(value).lower()
    return n if n in ("auto", "none", "openai", "ollama") else DEFAULTS["embedding_provider"]


def normalize_handoff(value: Any) -> str:
    n = _as_str(value).lower()
    if n in ("none", "summary"):
        return n
    if n in ("verbatim", "verbatim_last_n"):
        return "verbatim"
    return DEFAULTS["handoff"]


def _normalize_soft_suspect(raw: Dict[str, Any]) -> SoftSuspectSettings:
    action = _as_str(raw.get("action")).lower()
    if action not in ("none", "ask"):
        action = DEFAULTS["soft_suspect_action"]
    mode = _as_str(raw.get("mode")).lower().replace("-", "_")
    if mode not in ("strict", "best_effort"):
        mode = DEFAULTS["soft_suspect_mode"]
    prompt = _as_str(raw.get("prompt")) or DEFAULTS["soft_suspect_prompt"]
    ttl = clamp_int(raw.get("ttl_seconds"), DEFAULTS["soft_suspect_ttl_seconds"], 10, 24 * 3600)
    return SoftSuspectSettings(action=action, mode=mode, prompt=prompt, ttl_seconds=ttl)


def resolve_config(raw: Any) -> ResolvedConfig:
    """Resolve a raw `topic_shift` mapping into a clamped, preset-backed config.

    Lookup order for tunables is `advanced.<key>` first, then the legacy
    top-level alias, then the preset value.
    """
    obj = _as_dict(raw)
    adv = _as_dict(obj.get("advanced"))
    legacy_emb = _as_dict(obj.get("embedding"))
    adv_emb = _as_dict(adv.get("embedding"))
    persist = _as_dict(obj.get("persistence"))
    envelope = _as_dict(adv.get("envelope"))

    preset = normalize_preset(obj.get("preset"))
    p = PRESET_MAP[preset]

    def tun(key: str) -> Any:
        return _pick(adv.get(key), obj.get(key))

    ignored_raw = tun("ignored_providers")
    ignored = frozenset(
        s.strip().lower() for s in (ignored_raw if isinstance(ignored_raw, list) else []) if isinstance(s, str) and s.strip()
    )

    return ResolvedConfig(
        enabled=_as_bool(obj.get("enabled"), DEFAULTS["enabled"]),
        preset=preset,
        history_window=clamp_int(tun("history_window"), p["history_window"], 2, 40),
        min_history_messages=clamp_int(tun("min_history_messages"), p["min_history_messages"], 1, 30),
        min_meaningful_tokens=clamp_int(tun("min_meaningful_tokens"), p["min_meaningful_tokens"], 2, 60),
        min_token_length=clamp_int(tun("min_token_length"), p["min_token_length"], 1, 8),
        min_signal_chars=clamp_int(adv.get("min_signal_chars"), DEFAULTS["min_signal_chars"], 1, 500),
        min_signal_token_count=clamp_int(adv.get("min_signal_token_count"), DEFAULTS["min_signal_token_count"], 1, 60),
        min_signal_entropy=clamp_float(adv.get("min_signal_entropy"), DEFAULTS["min_signal_entropy"], 0.0, 8.0),
        min_unique_token_ratio=clamp_float(adv.get("min_unique_token_ratio"), DEFAULTS["min_unique_token_ratio"], 0.0, 1.0),
        low_entropy_floor=clamp_float(adv.get("low_entropy_floor"), DEFAULTS["low_entropy_floor"], 0.0, 8.0),
        strip_envelope=_as_bool(adv.get("strip_envelope"), DEFAULTS["strip_envelope"]),
        envelope=EnvelopeRules(
            line_prefixes=_as_str_tuple(envelope.get("line_prefixes"), DEFAULT_ENVELOPE_LINE_PREFIXES),
            exact_lines=_as_str_tuple(envelope.get("exact_lines"), DEFAULT_ENVELOPE_EXACT_LINES),
            fence_headers=_as_str_tuple(envelope.get("fence_headers"), DEFAULT_ENVELOPE_FENCE_HEADERS),
        ),
        soft_consecutive_signals=clamp_int(tun("soft_consecutive_signals"), p["soft_consecutive_signals"], 1, 4),
        cooldown_minutes=clamp_int(tun("cooldown_minutes"), p["cooldown_minutes"], 0, 240),
        ignored_providers=ignored,
        soft_score_threshold=clamp_float(tun("soft_score_threshold"), p["soft_score_threshold"], 0.0, 1.0),
        hard_score_threshold=clamp_float(tun("hard_score_threshold"), p["hard_score_threshold"], 0.0, 1.0),
        soft_similarity_threshold=clamp_float(tun("soft_similarity_threshold"), p["soft_similarity_threshold"], 0.0, 1.0),
        hard_similarity_threshold=clamp_float(tun("hard_similarity_threshold"), p["hard_similarity_threshold"], 0.0, 1.0),
        soft_novelty_threshold=clamp_float(tun("soft_novelty_threshold"), p["soft_novelty_threshold"], 0.0, 1.0),
        hard_novelty_threshold=clamp_float(tun("hard_novelty_threshold"), p["hard_novelty_threshold"], 0.0, 1.0),
        embedding_gate_margin=clamp_float(adv.get("embedding_gate_margin"), DEFAULTS["embedding_gate_margin"], 0.0, 1.0),
        handoff_mode=normalize_handoff(_pick(obj.get("handoff"), adv.get("handoff"), obj.get("handoff_mode"))),
        handoff_last_n=clamp_int(tun("handoff_last_n"), DEFAULTS["handoff_last_n"], 1, 20),
        handoff_max_chars=clamp_int(tun("handoff_max_chars"), DEFAULTS["handoff_max_chars"], 60, 800),
        handoff_tail_bytes=clamp_int(tun("handoff_tail_bytes"), DEFAULTS["handoff_tail_bytes"], 4096, 16 * 1024 * 1024),
        embedding=EmbeddingSettings(
            provider=normalize_embedding_provider(
                _pick(obj.get("embeddings"), adv.get("embeddings"), adv_emb.get("provider"), legacy_emb.get("provider"))
            ),
            model=_as_str(_pick(adv_emb.get("model"), legacy_emb.get("model"))),
            base_url=_as_str(_pick(adv_emb.get("base_url"), legacy_emb.get("base_url"))),
            api_key=_as_str(_pick(adv_emb.get("api_key"), legacy_emb.get("api_key"))),
            timeout_ms=clamp_int(
                _pick(adv_emb.get("timeout_ms"), legacy_emb.get("timeout_ms")),
                DEFAULTS["embedding_timeout_ms"],
                1000,
                30_000,
            ),
        ),
        soft_suspect=_normalize_soft_suspect(_as_dict(obj.get("soft_suspect"))),
        persistence_enabled=_as_bool(persist.get("enabled"), DEFAULTS["persistence_enabled"]),
        persistence_debounce_seconds=clamp_float(
            persist.get("debounce_seconds"), DEFAULTS["persistence_debounce_seconds"], 0.0, 600.0
        ),
        persistence_shutdown_timeout_seconds=clamp_float(
            persist.get("shutdown_timeout_seconds"), DEFAULTS["persistence_shutdown_timeout_seconds"], 0.1, 120.0
        ),
        dry_run=_as_bool(obj.get("dry_run"), DEFAULTS["dry_run"]),
        debug=_as_bool(obj.get("debug"), DEFAULTS["debug"]),
    )


def load_resolved_config(section: Optional[Dict[str, Any]] = None) -> ResolvedConfig:
    """Resolve the `topic_shift` section of the loaded YAML (or an explicit mapping)."""
    if section is None:
        section = _as_dict(cfg_get("topic_shift", {}))
    return resolve_config(section)


# Load config on import
load_config(DEFAULT_CONFIG_PATH)

# Export commonly used config values
SERVER_HOST: str = str(cfg_get("server.host", "127.0.0.1"))
SERVER_PORT: int = int(cfg_get("server.port", 9010))
STATE_DIR: str = str(cfg_get("state_dir", "") or os.getenv("TOPIC_SHIFT_STATE_DIR") or "")
LOG_LEVEL: str = str(cfg_get("logging.level", "INFO"))
