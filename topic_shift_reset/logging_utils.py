"""Shared helpers for operator log lines and privacy-safe previews."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Optional

LOGGER_NAME = "topic_shift_reset"
LOG_PREFIX = "topic-shift-reset:"

_EMAIL_RE = re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b", re.IGNORECASE)
_PHONE_RE = re.compile(
    r"\b(?:\+?\d{1,3}[\s\-]?)?(?:\(?\d{2,4}\)?[\s\-]?)?\d{3,4}[\s\-]?\d{3,4}\b",
    re.IGNORECASE,
)


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def setup_logger(level: Any = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """Attach console (and optional file) handlers once; safe to call repeatedly."""
    logger = get_logger()
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def short_hash(text: str) -> str:
    raw = str(text or "")
    return hashlib.sha256(raw.encode("utf-8", errors="ignore")).hexdigest()[:12]


def redact_pii(text: str, token: str = "[REDACTED]") -> str:
    s = str(text or "")
    s = _EMAIL_RE.sub(token, s)
    s = _PHONE_RE.sub(token, s)
    return s


def safe_preview(text: str, max_len: int = 120) -> str:
    s = redact_pii(str(text or ""), token="[REDACTED]").replace("\n", " ").strip()
    s = re.sub(r"\s+", " ", s)
    if len(s) > max_len:
        return s[: max(0, max_len - 3)].rstrip() + "..."
    return s


def fmt_metric(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:.3f}"


def kv_line(event: str, **fields: Any) -> str:
    """Build a stable `topic-shift-reset: <event> k=v ...` line (field order preserved)."""
    parts = [f"{LOG_PREFIX} {event}"]
    for key, value in fields.items():
        if isinstance(value, bool):
            value = "1" if value else "0"
        elif isinstance(value, float):
            value = fmt_metric(value)
        elif value is None:
            value = "n/a"
        parts.append(f"{key}={value}")
    return " ".join(parts)
