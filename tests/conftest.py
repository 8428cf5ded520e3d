from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

import pytest

from topic_shift_reset.config import resolve_config
from topic_shift_reset.embeddings import EmbeddingBackend
from topic_shift_reset.engine import TopicShiftEngine
from topic_shift_reset.host import FileHost

SESSION_KEY = "agent:main:main"

COOKING = [
    "pasta sauce recipe needs fresh tomatoes garlic basil",
    "simmer tomato sauce slowly with olive oil and garlic",
    "add basil leaves after the pasta sauce finishes cooking",
]
TECH = "kubernetes cluster autoscaling requires careful node pool configuration"
ASTRONOMY = "astronomy telescopes reveal distant galaxies spinning quietly overhead"
# One shared token each with the cooking baseline: soft, never hard once hard bars are raised.
SOFT_SHIFTS = [
    "garlic bread pairs nicely alongside roasted vegetables tonight",
    "pasta shapes differ across many italian regions historically",
    "olive harvest festivals attract tourists every autumn season",
]
NO_HARD = {"hard_score_threshold": 1.0, "hard_novelty_threshold": 1.0}


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> int:
        self.now += ms
        return self.now


class KeywordBackend(EmbeddingBackend):
    """Two-topic toy embedding: kubernetes text vs everything else."""

    name = "fake:keyword"

    def __init__(self):
        self.calls: List[str] = []

    def embed(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        return [0.0, 1.0] if "kubernetes" in text.lower() else [1.0, 0.0]


class FailingBackend(EmbeddingBackend):
    name = "fake:failing"

    def __init__(self):
        self.calls = 0

    def embed(self, text: str) -> Optional[List[float]]:
        self.calls += 1
        raise RuntimeError("backend down")


def make_cfg(advanced: Optional[Dict[str, Any]] = None, **top: Any):
    raw: Dict[str, Any] = {"embeddings": "none", "persistence": {"enabled": False}}
    raw.update(top)
    if advanced:
        raw["advanced"] = dict(advanced)
    return resolve_config(raw)


def write_json(path: str, value: Any) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(value, f, indent=2)


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_transcript(path: str, messages: List[Dict[str, Any]]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for m in messages:
            f.write(json.dumps({"type": "message", "message": m}) + "\n")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def host(tmp_path) -> FileHost:
    return FileHost(str(tmp_path))


@pytest.fixture
def store_path(host) -> str:
    path = host.resolve_store_path("main")
    write_json(path, {SESSION_KEY: {"sessionId": "initial-session", "updatedAt": 1, "channel": "telegram"}})
    return path


@pytest.fixture
def make_engine(host, clock):
    def _make(cfg=None, backend=None, **kwargs):
        cfg = cfg or make_cfg()
        return TopicShiftEngine(
            cfg,
            host.ports(),
            clock=clock,
            backend_factory=lambda _cfg: backend,
            **kwargs,
        )

    return _make


@pytest.fixture
def debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="topic_shift_reset")
    return caplog
