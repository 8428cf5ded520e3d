# steering.py
"""One-shot clarification steer for soft-suspect sessions.

Ticket lifecycle: armed -> injected -> (replied) -> cleared, or armed -> expired.
All helpers are pure; callers store the returned ticket back on the session.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional, Tuple

from .config import ResolvedConfig
from .session_state import SteerTicket


def steering_enabled(cfg: ResolvedConfig) -> bool:
    return cfg.soft_suspect.action == "ask"


def arm_steer(cfg: ResolvedConfig, now: int) -> SteerTicket:
    return SteerTicket(created_at=now, expires_at=now + cfg.soft_suspect.ttl_seconds * 1000)


def expire_steer(ticket: Optional[SteerTicket], now: int) -> Optional[SteerTicket]:
    if ticket is None or now >= ticket.expires_at:
        return None
    return ticket


def try_consume_steer(ticket: Optional[SteerTicket], now: int, prompt: str) -> Tuple[Optional[str], Optional[SteerTicket]]:
    """Return (prompt, next_ticket). The prompt is handed out at most once per ticket."""
    ticket = expire_steer(ticket, now)
    if ticket is None:
        return None, None
    if ticket.injected:
        return None, ticket
    return prompt, replace(ticket, injected=True, injected_at=now)


def observe_user_reply(ticket: Optional[SteerTicket], at: int) -> Optional[SteerTicket]:
    """Mark the ticket answered when a user message lands after injection."""
    if ticket is None or not ticket.injected or ticket.replied:
        return ticket
    if ticket.injected_at is not None and at >= ticket.injected_at:
        return replace(ticket, replied=True)
    return ticket


def strict_gate_blocks(cfg: ResolvedConfig, ticket: Optional[SteerTicket]) -> bool:
    """Strict mode holds soft-confirmed rotation until the ask was injected and answered."""
    if not steering_enabled(cfg) or cfg.soft_suspect.mode != "strict":
        return False
    return ticket is None or not (ticket.injected and ticket.replied)
