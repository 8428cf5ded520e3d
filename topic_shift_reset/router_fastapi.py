"""FastAPI hook surface for topic-shift-reset.

Responsibilities:
- expose host hook routes (message received/sent, prompt build)
- run engine work off the event loop
- hand queued handoff events back to the host
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .__about__ import __version__
from .classifier import Decision
from .config import STATE_DIR, load_resolved_config
from .engine import MessageEvent, TopicShiftEngine
from .host import FileHost
from .logging_utils import get_logger

log = get_logger()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class MessageReceivedIn(BaseModel):
    channel: str
    content: str
    sender: Optional[str] = None
    conversation_id: Optional[str] = None
    account_id: Optional[str] = None
    agent_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageIn(BaseModel):
    session_key: str
    content: str
    provider: str = ""
    agent_id: str = ""


class MessageSentIn(BaseModel):
    session_key: str
    content: str
    success: bool = True
    provider: str = ""


class PromptBuildIn(BaseModel):
    session_key: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _run_sync(func, /, *args, **kwargs):
    """Run blocking/sync work off the event loop to keep the hook surface responsive."""
    return await run_in_threadpool(func, *args, **kwargs)


def _decision_payload(decision: Optional[Decision]) -> Optional[Dict[str, Any]]:
    if decision is None:
        return None
    return {"kind": decision.kind, "reason": decision.reason, "metrics": asdict(decision.metrics)}


def _format_hook_exception(exc: Exception) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    log.exception(f"topic-shift-reset: unhandled hook error ts={ts} err={exc.__class__.__name__}: {exc}")
    return f"unhandled {exc.__class__.__name__}: {exc}"


def default_state_dir() -> str:
    return STATE_DIR or os.path.abspath("state")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(engine: Optional[TopicShiftEngine] = None, host: Optional[FileHost] = None) -> FastAPI:
    """Build the hook app. Without arguments it wires a FileHost under the configured state dir."""
    if host is None:
        host = FileHost(default_state_dir())
    if engine is None:
        engine = TopicShiftEngine(load_resolved_config(), host.ports())

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await _run_sync(engine.start)
        try:
            yield
        finally:
            await _run_sync(engine.shutdown)

    app = FastAPI(title="topic-shift-reset", version=__version__, lifespan=lifespan)
    app.state.engine = engine
    app.state.host = host

    @app.middleware("http")
    async def _hook_exception_guard(request: Request, call_next):
        """Hooks must never surface transport-level failures to the host."""
        try:
            return await call_next(request)
        except Exception as exc:
            return JSONResponse({"ok": False, "error": _format_hook_exception(exc)}, status_code=500)

    @app.get("/healthz")
    def healthz():
        return {
            "ok": True,
            "version": __version__,
            "enabled": engine.cfg.enabled,
            "preset": engine.cfg.preset,
            "embedding": engine.embedding_backend_name,
            "sessions": len(engine.store),
        }

    @app.post("/v1/hooks/message_received")
    async def message_received(body: MessageReceivedIn):
        decision = await _run_sync(
            engine.on_message_received,
            body.channel,
            body.content,
            sender=body.sender,
            conversation_id=body.conversation_id,
            account_id=body.account_id,
            metadata=body.metadata,
            agent_id=body.agent_id,
        )
        return {"ok": True, "decision": _decision_payload(decision)}

    @app.post("/v1/hooks/before_model_resolve")
    async def before_model_resolve(body: MessageIn):
        """Fallback path for hosts that only know the session key at prompt time."""
        event = MessageEvent(
            session_key=body.session_key,
            text=body.content,
            provider=body.provider,
            agent_id=body.agent_id,
            source="fallback",
        )
        decision = await _run_sync(engine.on_message, event)
        return {"ok": True, "decision": _decision_payload(decision)}

    @app.post("/v1/hooks/message_sent")
    async def message_sent(body: MessageSentIn):
        updated = await _run_sync(
            engine.on_message_sent,
            body.session_key,
            body.content,
            success=body.success,
            provider=body.provider,
        )
        return {"ok": True, "updated": updated}

    @app.post("/v1/hooks/before_prompt_build")
    async def before_prompt_build(body: PromptBuildIn):
        prompt = await _run_sync(engine.before_prompt_build, body.session_key)
        return {"ok": True, "prependContext": prompt}

    @app.get("/v1/system_events/{session_key}")
    def system_events(session_key: str):
        events = host.drain_system_events(session_key)
        return {
            "ok": True,
            "events": [{"text": e.text, "contextKey": e.context_key} for e in events],
        }

    return app
