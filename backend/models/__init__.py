"""
Spanora Collector - Data Models
"""
from .trace import (
    IngestResponse,
    Span,
    SpanEvent,
    SpanKind,
    SpanStatus,
    TokenUsage,
    Trace,
    TraceBatch,
    TraceStatus,
    TraceSummary,
)

__all__ = [
    "IngestResponse",
    "Span",
    "SpanEvent",
    "SpanKind",
    "SpanStatus",
    "TokenUsage",
    "Trace",
    "TraceBatch",
    "TraceStatus",
    "TraceSummary",
]
