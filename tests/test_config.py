from __future__ import annotations

import pytest

from topic_shift_reset import config as config_mod
from topic_shift_reset.config import PRESET_MAP, clamp_int, resolve_config


def test_empty_config_uses_balanced_preset():
    cfg = resolve_config({})
    assert cfg.preset == "balanced"
    assert cfg.enabled is True
    assert cfg.history_window == PRESET_MAP["balanced"]["history_window"]
    assert cfg.soft_score_threshold == PRESET_MAP["balanced"]["soft_score_threshold"]
    assert cfg.handoff_mode == "summary"
    assert cfg.embedding.provider == "auto"
    assert cfg.soft_suspect.mode == "best_effort"


def test_unknown_preset_falls_back_to_balanced():
    assert resolve_config({"preset": "yolo"}).preset == "balanced"
    assert resolve_config({"preset": " Aggressive "}).preset == "aggressive"


def test_advanced_overrides_beat_top_level_aliases_and_preset():
    cfg = resolve_config(
        {
            "preset": "conservative",
            "history_window": 20,
            "cooldown_minutes": 1,
            "advanced": {"history_window": 15},
        }
    )
    assert cfg.history_window == 15
    assert cfg.cooldown_minutes == 1
    assert cfg.min_history_messages == PRESET_MAP["conservative"]["min_history_messages"]


def test_numeric_values_are_clamped():
    cfg = resolve_config(
        {
            "advanced": {
                "history_window": 1000,
                "soft_consecutive_signals": 0,
                "soft_score_threshold": 7,
                "min_meaningful_tokens": 1,
            }
        }
    )
    assert cfg.history_window == 40
    assert cfg.soft_consecutive_signals == 1
    assert cfg.soft_score_threshold == 1.0
    assert cfg.min_meaningful_tokens == 2


def test_non_numeric_values_fall_back():
    cfg = resolve_config({"advanced": {"history_window": "ten", "cooldown_minutes": True}})
    assert cfg.history_window == PRESET_MAP["balanced"]["history_window"]
    assert cfg.cooldown_minutes == PRESET_MAP["balanced"]["cooldown_minutes"]


@pytest.mark.parametrize("raw,expected", [("verbatim_last_n", "verbatim"), ("none", "none"), ("bogus", "summary")])
def test_handoff_normalisation(raw, expected):
    assert resolve_config({"handoff": raw}).handoff_mode == expected


def test_soft_suspect_and_embedding_sections():
    cfg = resolve_config(
        {
            "embeddings": "ollama",
            "embedding": {"model": "mxbai-embed-large", "timeout_ms": 50},
            "soft_suspect": {"action": "none", "mode": "strict", "ttl_seconds": 5},
        }
    )
    assert cfg.embedding.provider == "ollama"
    assert cfg.embedding.model == "mxbai-embed-large"
    assert cfg.embedding.timeout_ms == 1000
    assert cfg.soft_suspect.action == "none"
    assert cfg.soft_suspect.mode == "strict"
    assert cfg.soft_suspect.ttl_seconds == 10


def test_internal_and_configured_providers_are_ignored():
    cfg = resolve_config({"advanced": {"ignored_providers": ["Discord"]}})
    assert cfg.is_ignored_provider("heartbeat")
    assert cfg.is_ignored_provider("cron-event")
    assert cfg.is_ignored_provider("discord")
    assert not cfg.is_ignored_provider("telegram")
    assert not cfg.is_ignored_provider("")


def test_clamp_int_floors():
    assert clamp_int(3.9, 0, 0, 10) == 3
    assert clamp_int(float("nan"), 7, 0, 10) == 7


def test_cfg_get_reads_dot_paths(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("server:\n  port: 9999\ntopic_shift:\n  preset: aggressive\n", encoding="utf-8")
    saved = config_mod.CFG
    try:
        config_mod.load_config(str(path))
        assert config_mod.cfg_get("server.port", 0) == 9999
        assert config_mod.cfg_get("server.missing", "x") == "x"
        assert config_mod.load_resolved_config().preset == "aggressive"
    finally:
        config_mod.CFG = saved


def test_load_config_missing_file_degrades_to_empty(tmp_path):
    saved = config_mod.CFG
    try:
        assert config_mod.load_config(str(tmp_path / "nope.yaml")) == {}
    finally:
        config_mod.CFG = saved
