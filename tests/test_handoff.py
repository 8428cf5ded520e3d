from __future__ import annotations

import logging

from topic_shift_reset import handoff
from topic_shift_reset.handoff import (
    SUMMARY_HEADER,
    VERBATIM_HEADER,
    TranscriptMessage,
    build_handoff,
    extract_text_from_content,
    format_handoff_text,
    read_transcript_tail,
    truncate_text,
)

from conftest import make_cfg, write_transcript


def _conversation(n: int):
    out = []
    for i in range(n):
        role = "user" if i % 2 == 0 else "assistant"
        out.append({"role": role, "content": f"message number {i} " + "padding " * 10})
    return out


def test_extract_text_from_content_variants():
    assert extract_text_from_content("  hi  ") == "hi"
    assert extract_text_from_content([{"type": "input_text", "input_text": "a"}, {"text": " b "}, "junk", {}]) == "a\nb"
    assert extract_text_from_content(None) == ""


def test_read_tail_skips_non_messages_and_other_roles(tmp_path):
    path = tmp_path / "s.jsonl"
    write_transcript(str(path), [{"role": "user", "content": "first"}, {"role": "tool", "content": "ignored"}])
    with open(path, "a", encoding="utf-8") as f:
        f.write("not json\n")
        f.write('{"type": "compaction", "summary": "x"}\n')
        f.write('{"type": "message", "message": {"role": "Assistant", "content": [{"text": "second"}]}}\n')
    tail = read_transcript_tail(str(path), 5)
    assert tail == [TranscriptMessage("user", "first"), TranscriptMessage("assistant", "second")]


def test_read_tail_returns_last_n(tmp_path):
    path = tmp_path / "s.jsonl"
    write_transcript(str(path), _conversation(10))
    tail = read_transcript_tail(str(path), 3)
    assert [m.text.split()[2] for m in tail] == ["7", "8", "9"]


def test_read_tail_falls_back_to_full_read_when_window_too_small(tmp_path):
    path = tmp_path / "s.jsonl"
    write_transcript(str(path), _conversation(6))
    # Window shorter than one record: nothing parses, so the whole file is read.
    tail = read_transcript_tail(str(path), 2, max_bytes=40)
    assert [m.text.split()[2] for m in tail] == ["4", "5"]


def test_truncate_text():
    assert truncate_text("a  b\n c", 10) == "a b c"
    out = truncate_text("word " * 50, 20)
    assert len(out) <= 20
    assert out.endswith("…")


def test_format_handoff_text_modes():
    msgs = [TranscriptMessage("user", "hello there"), TranscriptMessage("assistant", "hi")]
    summary = format_handoff_text("summary", msgs, 100)
    assert summary.splitlines() == [SUMMARY_HEADER, "- user: hello there", "- assistant: hi"]
    assert format_handoff_text("verbatim", msgs, 100).startswith(VERBATIM_HEADER)
    assert format_handoff_text("none", msgs, 100) is None
    assert format_handoff_text("summary", [], 100) is None


def test_build_handoff_uses_previous_entry_transcript(tmp_path):
    store = str(tmp_path / "sessions.json")
    write_transcript(str(tmp_path / "old.jsonl"), _conversation(8))
    text = build_handoff(make_cfg(), store, {"sessionId": "old"})
    lines = text.splitlines()
    assert lines[0] == SUMMARY_HEADER
    assert len(lines) == 1 + 6


def test_build_handoff_missing_transcript_is_quiet(tmp_path, caplog):
    caplog.set_level(logging.WARNING, logger="topic_shift_reset")
    store = str(tmp_path / "sessions.json")
    assert build_handoff(make_cfg(), store, {"sessionId": "gone"}) is None
    assert not any("handoff read failed" in r.getMessage() for r in caplog.records)


def test_build_handoff_read_error_warns_and_returns_none(tmp_path, caplog, monkeypatch):
    caplog.set_level(logging.WARNING, logger="topic_shift_reset")
    write_transcript(str(tmp_path / "old.jsonl"), _conversation(4))

    def broken_tail(*_args, **_kwargs):
        raise OSError("disk gone")

    monkeypatch.setattr(handoff, "read_transcript_tail", broken_tail)
    assert build_handoff(make_cfg(), str(tmp_path / "sessions.json"), {"sessionId": "old"}) is None
    assert any("topic-shift-reset: handoff read failed" in r.getMessage() for r in caplog.records)


def test_build_handoff_disabled(tmp_path):
    write_transcript(str(tmp_path / "old.jsonl"), _conversation(2))
    assert build_handoff(make_cfg(handoff="none"), str(tmp_path / "sessions.json"), {"sessionId": "old"}) is None
