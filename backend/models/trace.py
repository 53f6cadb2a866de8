"""
Trace and span models for ingested telemetry
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SpanKind(str, Enum):
    """Type of span in the trace"""
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


class TraceStatus(str, Enum):
    """Rolled-up status of a trace"""
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


class SpanEvent(BaseModel):
    name: str
    timestamp: Optional[datetime] = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _fill_total(self) -> "TokenUsage":
        if not self.total_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens
        return self


class Span(BaseModel):
    """
    A single operation within a trace, as sent by the SDK.
    Represents an agent run, tool call, or LLM request.
    """
    model_config = ConfigDict(extra="ignore")

    trace_id: str = Field(pattern=r"^[0-9a-f]{32}$")
    span_id: str = Field(pattern=r"^[0-9a-f]{16}$")
    parent_span_id: Optional[str] = None

    name: str = Field(min_length=1, max_length=512)
    kind: SpanKind = SpanKind.INTERNAL
    agent: Optional[str] = None

    # Timing
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = Field(default=None, ge=0)

    # Outcome
    status: SpanStatus = SpanStatus.UNSET
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    attributes: dict[str, Any] = Field(default_factory=dict)
    events: list[SpanEvent] = Field(default_factory=list)

    # LLM metrics
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
    cost_usd: Optional[float] = Field(default=None, ge=0)

    input: Optional[Any] = None
    output: Optional[Any] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _not_own_parent(self) -> "Span":
        if self.parent_span_id == self.span_id:
            raise ValueError("a span cannot be its own parent")
        return self

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0


class TraceBatch(BaseModel):
    """Body of ``POST /api/v1/traces``."""
    spans: list[Span] = Field(..., min_length=1)
    resource: dict[str, Any] = Field(default_factory=dict)


class IngestResponse(BaseModel):
    accepted: int
    traces: list[str]


class TraceSummary(BaseModel):
    """
    Aggregate view of a trace, derived from its spans.
    """
    trace_id: str
    name: str
    status: TraceStatus = TraceStatus.RUNNING
    root_span_id: Optional[str] = None

    # Timing
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None

    # Aggregate metrics
    span_count: int = 0
    error_count: int = 0
    agents: list[str] = Field(default_factory=list)
    llm_calls: int = 0
    tool_calls: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0

    resource: dict[str, Any] = Field(default_factory=dict)


class Trace(TraceSummary):
    """
    A complete trace: the summary plus every span received so far.
    The tree structure is derived from parent_span_id.
    """
    spans: list[Span] = Field(default_factory=list)

    @classmethod
    def from_spans(cls, trace_id: str, spans: list[Span], resource: Optional[dict] = None) -> "Trace":
        if not spans:
            raise ValueError("a trace needs at least one span")

        ordered = sorted(spans, key=lambda s: s.start_time)
        span_ids = {s.span_id for s in ordered}
        roots = [s for s in ordered if not s.parent_span_id or s.parent_span_id not in span_ids]
        true_root = next((s for s in ordered if not s.parent_span_id), None)
        # Parent cycles leave no root at all
        head = true_root or (roots[0] if roots else ordered[0])

        end_times = [s.end_time for s in ordered if s.end_time is not None]
        finished = true_root is not None and all(s.end_time is not None for s in ordered)
        error_count = sum(1 for s in ordered if s.status == SpanStatus.ERROR)

        if error_count:
            status = TraceStatus.ERROR
        elif finished:
            status = TraceStatus.OK
        else:
            status = TraceStatus.RUNNING

        start_time = ordered[0].start_time
        end_time = max(end_times) if finished and end_times else None
        duration_ms = (end_time - start_time).total_seconds() * 1000 if end_time else None

        return cls(
            trace_id=trace_id,
            name=head.name,
            status=status,
            root_span_id=true_root.span_id if true_root else None,
            start_time=start_time,
            end_time=end_time,
            duration_ms=duration_ms,
            span_count=len(ordered),
            error_count=error_count,
            agents=sorted({s.agent for s in ordered if s.agent}),
            llm_calls=sum(1 for s in ordered if s.kind == SpanKind.LLM),
            tool_calls=sum(1 for s in ordered if s.kind == SpanKind.TOOL),
            total_tokens=sum(s.total_tokens for s in ordered),
            total_cost_usd=round(sum(s.cost_usd or 0.0 for s in ordered), 8),
            resource=resource or {},
            spans=ordered,
        )

    def summary(self) -> TraceSummary:
        return TraceSummary.model_validate(self.model_dump(exclude={"spans"}))

    def get_span_tree(self) -> list[dict]:
        """Build hierarchical span trees; spans whose parent never arrived become roots."""
        spans_by_id = {s.span_id: s for s in self.spans}
        children: dict[str, list[str]] = {s.span_id: [] for s in self.spans}
        roots: list[str] = []

        for span in self.spans:
            parent = span.parent_span_id
            if parent and parent != span.span_id and parent in children:
                children[parent].append(span.span_id)
            else:
                roots.append(span.span_id)

        visited: set[str] = set()

        def build_tree(span_id: str) -> dict:
            visited.add(span_id)
            span = spans_by_id[span_id]
            return {
                "span": span.model_dump(mode="json"),
                "children": [build_tree(cid) for cid in children[span_id] if cid not in visited]
            }

        tree = [build_tree(root_id) for root_id in roots]
        # Spans in a parent cycle are unreachable from any root
        for span in self.spans:
            if span.span_id not in visited:
                tree.append(build_tree(span.span_id))
        return tree
