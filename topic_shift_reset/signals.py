# signals.py
"""Signal extraction: envelope stripping, tokenization and low-signal gating."""

from __future__ import annotations

import math
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Union

from .config import EnvelopeRules, ResolvedConfig


_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
# Letter/digit start, then letters, digits, underscore or hyphen (Unicode-aware).
_TOKEN_RE = re.compile(r"[^\W_][\w\-]*")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_WS_RE = re.compile(r"\s+")

_CONTROL_SIGILS = ("/", ">>", "»", "Â»", "!")

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


# ---------------------------------------------------------------------------
# Control / envelope handling
# ---------------------------------------------------------------------------

def is_control_text(text: str) -> bool:
    """Check if text is a host command (slash or >> sigils) rather than conversation."""
    t = (text or "").lstrip()
    return any(t.startswith(s) for s in _CONTROL_SIGILS)


def strip_envelope(text: str, rules: Optional[EnvelopeRules] = None) -> str:
    """Drop wrapper lines the host adds around user text.

    - lines starting with a configured prefix are removed
    - lines equal to a configured exact line are removed
    - a fence header line removes itself and the fenced block right after it
    """
    rules = rules or EnvelopeRules()
    lines = (text or "").replace("\r\n", "\n").split("\n")
    kept: List[str] = []
    skip_fence = False
    expecting_fence = False

    for line in lines:
        trimmed = line.strip()
        if skip_fence:
            if trimmed.startswith("```"):
                skip_fence = False
            continue

        if trimmed in rules.fence_headers:
            expecting_fence = True
            continue

        if expecting_fence and trimmed.startswith("```"):
            skip_fence = True
            expecting_fence = False
            continue

        expecting_fence = False

        if trimmed in rules.exact_lines:
            continue
        if any(trimmed.startswith(p) for p in rules.line_prefixes):
            continue

        kept.append(line)

    return _BLANK_RUN_RE.sub("\n\n", "\n".join(kept)).strip()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

def tokenize_list(text: str, min_token_length: int) -> List[str]:
    normalized = unicodedata.normalize("NFKC", text or "").casefold()
    normalized = _URL_RE.sub(" ", normalized)
    return [t for t in _TOKEN_RE.findall(normalized) if len(t) >= min_token_length]


def tokenize(text: str, min_token_length: int) -> Set[str]:
    return set(tokenize_list(text, min_token_length))


def token_entropy(tokens: Iterable[str]) -> float:
    """Shannon entropy (bits) of the token frequency distribution."""
    counts = Counter(tokens)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in counts.values():
        p = count / total
        entropy -= p * math.log2(p)
    return entropy


def normalize_text_for_hash(text: str) -> str:
    return _WS_RE.sub(" ", unicodedata.normalize("NFKC", text or "").lower()).strip()


def fnv1a_32(text: str) -> str:
    h = _FNV_OFFSET
    for ch in text:
        h ^= ord(ch)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return format(h, "x")


def content_fingerprint(text: str) -> str:
    """Stable fingerprint of message content used for rotation/event dedupe."""
    return fnv1a_32(normalize_text_for_hash(text))


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SignalSample:
    text: str
    token_list: List[str]
    tokens: Set[str]
    entropy: float
    fingerprint: str


@dataclass(frozen=True)
class SkipReason:
    reason: str
    chars: int = 0
    token_count: int = 0
    entropy: float = 0.0


def extract_signal(raw_text: str, cfg: ResolvedConfig) -> Union[SignalSample, SkipReason]:
    """Turn raw message text into a scored-ready sample, or explain why it was dropped."""
    raw = (raw_text or "").strip()
    if not raw:
        return SkipReason("empty")
    if is_control_text(raw):
        return SkipReason("control")

    text = strip_envelope(raw, cfg.envelope) if cfg.strip_envelope else raw
    if not text:
        return SkipReason("envelope-only")
    if is_control_text(text):
        return SkipReason("control")

    token_list = tokenize_list(text, cfg.min_token_length)
    entropy = token_entropy(token_list)
    if (
        len(text) < cfg.min_signal_chars
        or len(token_list) < cfg.min_signal_token_count
        or entropy < cfg.min_signal_entropy
    ):
        return SkipReason("low-signal", chars=len(text), token_count=len(token_list), entropy=entropy)

    # Short acknowledgements ("sounds great thanks") never reach the classifier.
    tokens = set(token_list)
    if len(tokens) < cfg.min_meaningful_tokens:
        return SkipReason("few-meaningful-tokens", chars=len(text), token_count=len(token_list), entropy=entropy)

    return SignalSample(
        text=text,
        token_list=token_list,
        tokens=tokens,
        entropy=entropy,
        fingerprint=content_fingerprint(text),
    )
