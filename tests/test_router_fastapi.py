from __future__ import annotations

import os

from fastapi.testclient import TestClient

from topic_shift_reset.__about__ import __version__
from topic_shift_reset.router_fastapi import create_app

from conftest import COOKING, SESSION_KEY, TECH, read_json, write_transcript


def _client(make_engine, host):
    return TestClient(create_app(make_engine(), host))


def test_healthz_reports_version_and_backend(make_engine, host):
    with _client(make_engine, host) as client:
        body = client.get("/healthz").json()
    assert body["ok"] is True
    assert body["version"] == __version__
    assert body["preset"] == "balanced"
    assert body["embedding"] == "none"
    assert body["sessions"] == 0


def test_message_received_returns_decision(make_engine, host):
    with _client(make_engine, host) as client:
        resp = client.post(
            "/v1/hooks/message_received",
            json={"channel": "telegram", "content": COOKING[0], "sender": "user-1"},
        )
        assert resp.status_code == 200
        decision = resp.json()["decision"]
        assert decision["kind"] == "warmup"
        assert decision["metrics"]["used_embedding"] is False

        # Low-signal text is skipped, not an error.
        skipped = client.post("/v1/hooks/message_received", json={"channel": "telegram", "content": "ok"})
        assert skipped.json() == {"ok": True, "decision": None}


def test_message_sent_and_prompt_build(make_engine, host):
    with _client(make_engine, host) as client:
        sent = client.post("/v1/hooks/message_sent", json={"session_key": SESSION_KEY, "content": COOKING[0]})
        assert sent.json() == {"ok": True, "updated": True}
        prompt = client.post("/v1/hooks/before_prompt_build", json={"session_key": SESSION_KEY})
        assert prompt.json() == {"ok": True, "prependContext": None}


def test_fallback_hook_rotates_and_hands_off(make_engine, host, store_path):
    write_transcript(
        os.path.join(os.path.dirname(store_path), "initial-session.jsonl"),
        [{"role": "user", "content": COOKING[0]}],
    )
    with _client(make_engine, host) as client:
        for text in COOKING:
            resp = client.post("/v1/hooks/before_model_resolve", json={"session_key": SESSION_KEY, "content": text})
            assert resp.json()["decision"]["kind"] == "warmup"

        resp = client.post("/v1/hooks/before_model_resolve", json={"session_key": SESSION_KEY, "content": TECH})
        assert resp.json()["decision"]["kind"] == "rotate-hard"
        assert read_json(store_path)[SESSION_KEY]["sessionId"] != "initial-session"

        events = client.get(f"/v1/system_events/{SESSION_KEY}").json()["events"]
        assert len(events) == 1
        assert events[0]["contextKey"].startswith("topic-shift-reset:")
        assert client.get(f"/v1/system_events/{SESSION_KEY}").json()["events"] == []


def test_request_validation_errors_are_422(make_engine, host):
    with _client(make_engine, host) as client:
        resp = client.post("/v1/hooks/message_sent", json={"content": "missing key"})
    assert resp.status_code == 422
