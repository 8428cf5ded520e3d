from __future__ import annotations

import pytest

from topic_shift_reset.config import EnvelopeRules
from topic_shift_reset.signals import (
    SignalSample,
    SkipReason,
    content_fingerprint,
    extract_signal,
    is_control_text,
    strip_envelope,
    token_entropy,
    tokenize,
    tokenize_list,
)

from conftest import make_cfg


@pytest.mark.parametrize("text", ["/reset now", "  >>attach kb", "» status", "!help me"])
def test_control_text_is_rejected(text):
    assert is_control_text(text)


def test_plain_text_is_not_control():
    assert not is_control_text("how do I reset my router?")


def test_strip_envelope_drops_prefixed_lines_and_fenced_metadata():
    raw = "\n".join(
        [
            "System: [2026-01-01] cron tick",
            "Conversation info (untrusted metadata):",
            "```json",
            '{"chat": "x"}',
            "```",
            "",
            "",
            "",
            "What is the best pasta sauce?",
        ]
    )
    assert strip_envelope(raw) == "What is the best pasta sauce?"


def test_strip_envelope_exact_lines():
    rules = EnvelopeRules(line_prefixes=(), exact_lines=("[forwarded]",), fence_headers=())
    assert strip_envelope("[forwarded]\nhello there", rules) == "hello there"


def test_tokenize_normalises_case_urls_and_short_tokens():
    tokens = tokenize_list("Check https://example.com/a?b=1 for Café-Menu AND a b", 2)
    assert tokens == ["check", "for", "café-menu", "and"]
    assert tokenize("Go go GO", 2) == {"go"}


def test_token_entropy():
    assert token_entropy([]) == 0.0
    assert token_entropy(["a1", "a1"]) == 0.0
    assert token_entropy(["a1", "b2"]) == pytest.approx(1.0)
    assert token_entropy(["a1", "b2", "c3", "d4"]) == pytest.approx(2.0)


def test_fingerprint_ignores_case_and_whitespace():
    assert content_fingerprint("Hello   World") == content_fingerprint(" hello world ")
    assert content_fingerprint("hello world") != content_fingerprint("hello there")


def test_extract_signal_accepts_meaningful_text():
    sample = extract_signal("kubernetes cluster autoscaling requires careful tuning", make_cfg())
    assert isinstance(sample, SignalSample)
    assert "kubernetes" in sample.tokens
    assert sample.entropy > 2.0


@pytest.mark.parametrize(
    "text,reason",
    [
        ("", "empty"),
        ("/new session please", "control"),
        ("Current time: 12:00", "envelope-only"),
        ("ok thanks", "low-signal"),
        ("yes yes yes yes yes yes yes", "low-signal"),
        ("sounds great thanks buddy", "few-meaningful-tokens"),
        ("quantum bicycle repairs", "few-meaningful-tokens"),
    ],
)
def test_extract_signal_skips(text, reason):
    result = extract_signal(text, make_cfg())
    assert isinstance(result, SkipReason)
    assert result.reason == reason


def test_meaningful_token_floor_follows_config():
    text = "sounds great thanks buddy"
    assert isinstance(extract_signal(text, make_cfg()), SkipReason)
    assert isinstance(extract_signal(text, make_cfg({"min_meaningful_tokens": 4})), SignalSample)


def test_strip_envelope_can_be_disabled():
    cfg = make_cfg({"strip_envelope": False})
    result = extract_signal("Current time: 12:00 on a sunny afternoon", cfg)
    assert isinstance(result, SignalSample)
    assert "current" in result.tokens
