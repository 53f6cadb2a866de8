"""
Spanora SDK
Tracing for LLM applications and agents

Features:
- Nested traces/spans with context propagation (threads + asyncio)
- Agent boundaries via ``track()``
- Background batching with retry/backoff and a blocking ``shutdown()``
- Fail-silent export (never crashes the host application)
- Automatic OpenAI / Anthropic instrumentation, including streams
"""
from ._version import __version__
from .context import get_current_agent, get_current_span, get_current_trace_id
from .errors import ConfigurationError, SpanoraError
from .exporter import (
    ConsoleSpanExporter,
    ExportResult,
    HttpSpanExporter,
    InMemorySpanExporter,
    SpanExporter,
)
from .models import Span, SpanEvent, SpanKind, SpanStatus, TokenUsage, TraceBatch
from .processor import BatchSpanProcessor, MultiSpanProcessor, SimpleSpanProcessor, SpanProcessor
from .tracer import (
    ToolResult,
    Tracer,
    flush,
    get_tracer,
    init,
    reset_global_tracer,
    run_tool,
    shutdown,
    span,
    track,
)

__all__ = [
    "__version__",
    # Lifecycle
    "init",
    "flush",
    "shutdown",
    "get_tracer",
    "reset_global_tracer",
    # Tracing
    "Tracer",
    "track",
    "span",
    "run_tool",
    "ToolResult",
    "get_current_span",
    "get_current_trace_id",
    "get_current_agent",
    # Models
    "Span",
    "SpanEvent",
    "SpanKind",
    "SpanStatus",
    "TokenUsage",
    "TraceBatch",
    # Export
    "SpanProcessor",
    "SimpleSpanProcessor",
    "BatchSpanProcessor",
    "MultiSpanProcessor",
    "SpanExporter",
    "HttpSpanExporter",
    "ConsoleSpanExporter",
    "InMemorySpanExporter",
    "ExportResult",
    # Errors
    "SpanoraError",
    "ConfigurationError",
    # Instrumentation
    "instrument",
    "uninstrument",
    "is_instrumented",
]


def instrument() -> bool:
    from .instrumentation import instrument as _instrument
    return _instrument()


def uninstrument() -> None:
    from .instrumentation import uninstrument as _uninstrument
    return _uninstrument()


def is_instrumented() -> bool:
    from .instrumentation import is_instrumented as _is_instrumented
    return _is_instrumented()
