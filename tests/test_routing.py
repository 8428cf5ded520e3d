from __future__ import annotations

import pytest

from topic_shift_reset.host import FileHost
from topic_shift_reset.routing import Peer, default_route, default_route_key, infer_peer, looks_like_group


@pytest.mark.parametrize(
    "value,expected",
    [
        ("telegram:group:42", True),
        ("12345@g.us", True),
        ("slack:channel:general", True),
        ("user-1", False),
        ("", False),
        (None, False),
    ],
)
def test_looks_like_group(value, expected):
    assert looks_like_group(value) is expected


def test_infer_peer_direct_group_thread():
    assert infer_peer("user-1", None) == Peer("direct", "user-1")
    assert infer_peer("user-1", "telegram:group:42") == Peer("group", "telegram:group:42")
    assert infer_peer("user-1", "chat-9", {"threadId": 7}) == Peer("thread", "chat-9:thread:7")
    # Booleans are not thread ids.
    assert infer_peer("user-1", "chat-9", {"threadId": True}).kind == "direct"
    assert infer_peer(None, None) == Peer("direct", "unknown")


def test_default_route_key_normalizes_parts():
    peer = Peer("direct", "User-1")
    assert default_route_key(None, "Telegram", None, peer) == "agent:main:telegram:default:direct:user-1"
    assert default_route_key("Alpha", "slack", "work", Peer("group", "G1")) == "agent:alpha:slack:work:group:g1"


def test_default_route_requires_channel():
    with pytest.raises(ValueError):
        default_route("main", "  ", None, Peer("direct", "u"))
    route = default_route("alpha", "telegram", None, Peer("thread", "c:thread:1"))
    assert route.agent_id == "alpha"
    assert route.route_kind == "thread"


def test_file_host_store_path_and_events(tmp_path):
    host = FileHost(str(tmp_path))
    assert host.resolve_store_path("Alpha") == str(tmp_path / "agents" / "alpha" / "sessions" / "sessions.json")
    assert host.resolve_store_path("") == str(tmp_path / "agents" / "main" / "sessions" / "sessions.json")
    with pytest.raises(ValueError):
        host.resolve_store_path("..")

    host.enqueue_system_event("first", "k", "ctx:a")
    host.enqueue_system_event("other", "k", "ctx:b")
    host.enqueue_system_event("second", "k", "ctx:a")
    assert host.pending_event_count() == 2
    events = host.drain_system_events("k")
    assert [(e.text, e.context_key) for e in events] == [("other", "ctx:b"), ("second", "ctx:a")]
    assert host.drain_system_events("k") == []
