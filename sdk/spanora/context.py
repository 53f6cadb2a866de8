"""
Context propagation for the active span and agent.

Each thread and each asyncio task sees its own values; tasks inherit the
values that were current when they were created.
"""
from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional

from .models import Span

_current_span: ContextVar[Optional[Span]] = ContextVar(
    "spanora_current_span", default=None
)
_current_agent: ContextVar[Optional[str]] = ContextVar(
    "spanora_current_agent", default=None
)


def get_current_span() -> Optional[Span]:
    return _current_span.get()


def get_current_trace_id() -> Optional[str]:
    span = _current_span.get()
    return span.trace_id if span is not None else None


def get_current_agent() -> Optional[str]:
    return _current_agent.get()


def use_span(span: Optional[Span]) -> Token:
    return _current_span.set(span)


def reset_span(token: Token) -> None:
    _current_span.reset(token)


def use_agent(agent: Optional[str]) -> Token:
    return _current_agent.set(agent)


def reset_agent(token: Token) -> None:
    _current_agent.reset(token)
