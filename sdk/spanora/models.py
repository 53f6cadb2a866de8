"""
Span and batch models shared by the tracer, processors and exporters.
"""
from __future__ import annotations

import secrets
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, PrivateAttr, computed_field

from .pricing import get_cost_usd

_MAX_ERROR_LEN = 500

# Guards the ended check-and-set; spans can be ended from several threads
_END_LOCK = threading.Lock()


def new_trace_id() -> str:
    return uuid.uuid4().hex


def new_span_id() -> str:
    return secrets.token_hex(8)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SpanKind(str, Enum):
    """Type of work a span represents"""
    AGENT = "agent"
    LLM = "llm"
    TOOL = "tool"
    CHAIN = "chain"
    INTERNAL = "internal"


class SpanStatus(str, Enum):
    """Outcome of a span"""
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


class SpanEvent(BaseModel):
    name: str
    timestamp: datetime = Field(default_factory=_utcnow)
    attributes: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class Span(BaseModel):
    """
    A single unit of work: an agent run, an LLM request or a tool call.

    Spans with the same ``trace_id`` form a trace; ``parent_span_id`` links
    a span to the span that was current when it started.
    """
    trace_id: str = Field(default_factory=new_trace_id)
    span_id: str = Field(default_factory=new_span_id)
    parent_span_id: Optional[str] = None

    name: str
    kind: SpanKind = SpanKind.INTERNAL
    agent: Optional[str] = None

    # Timing
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None

    # Outcome
    status: SpanStatus = SpanStatus.UNSET
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    attributes: dict[str, Any] = Field(default_factory=dict)
    events: list[SpanEvent] = Field(default_factory=list)

    # LLM metrics
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
    cost_usd: Optional[float] = None

    # Captured content (only when content capture is enabled)
    input: Optional[Any] = None
    output: Optional[Any] = None

    _start_perf: float = PrivateAttr(default_factory=time.perf_counter)
    _on_end: Optional[Callable[["Span"], None]] = PrivateAttr(default=None)

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_attributes(self, attributes: dict[str, Any]) -> None:
        self.attributes.update(attributes)

    def add_event(self, name: str, attributes: Optional[dict[str, Any]] = None) -> None:
        self.events.append(SpanEvent(name=name, attributes=attributes or {}))

    def record_exception(self, exc: BaseException) -> None:
        """Mark the span as failed and keep a truncated copy of the error."""
        message = str(exc)[:_MAX_ERROR_LEN]
        self.status = SpanStatus.ERROR
        self.error_type = type(exc).__name__
        self.error_message = message
        self.add_event(
            "exception",
            {"exception.type": self.error_type, "exception.message": message},
        )

    def set_usage(
        self,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        model: Optional[str] = None,
    ) -> None:
        """Record token usage; the cost is filled in for models with known pricing."""
        if model:
            self.model = model
        self.usage = TokenUsage(
            prompt_tokens=int(prompt_tokens or 0),
            completion_tokens=int(completion_tokens or 0),
        )
        cost = get_cost_usd(self.model, self.usage.prompt_tokens, self.usage.completion_tokens)
        if cost is not None:
            self.cost_usd = cost

    def end(self, status: Optional[SpanStatus] = None, end_time: Optional[datetime] = None) -> bool:
        """
        Finish the span. The first call wins; later calls return False
        and change nothing.
        """
        with _END_LOCK:
            if self.end_time is not None:
                return False

            if end_time is not None:
                self.end_time = end_time
                elapsed = (end_time - self.start_time).total_seconds() * 1000
            else:
                self.end_time = _utcnow()
                elapsed = (time.perf_counter() - self._start_perf) * 1000
            self.duration_ms = max(elapsed, 0.0)

            if status is not None:
                self.status = SpanStatus(status)
            elif self.status == SpanStatus.UNSET:
                self.status = SpanStatus.OK

        if self._on_end is not None:
            self._on_end(self)
        return True


class TraceBatch(BaseModel):
    """Wire payload for ``POST /api/v1/traces``."""
    spans: list[Span]
    resource: dict[str, Any] = Field(default_factory=dict)
