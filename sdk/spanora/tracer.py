"""
Tracer, agent boundaries and the global init/shutdown lifecycle.

- Parent/child linkage through ContextVar (thread- and task-local)
- Sync + async context managers and decorators
- Finished spans are handed to a processor; nothing here touches the network
- Tool calls that fail gracefully (``run_tool``)
"""
from __future__ import annotations

import atexit
import functools
import inspect
import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from .config import SpanoraSettings
from .context import (
    get_current_agent,
    get_current_span,
    reset_agent,
    reset_span,
    use_agent,
    use_span,
)
from .errors import ConfigurationError
from .exporter import ConsoleSpanExporter, HttpSpanExporter
from .models import Span, SpanKind
from .processor import BatchSpanProcessor, MultiSpanProcessor, SimpleSpanProcessor, SpanProcessor
from .serialization import capture_args, capture_output

logger = logging.getLogger("spanora.tracer")


@dataclass(frozen=True)
class ToolResult:
    """Outcome of ``run_tool``: exactly one of ``output``/``error`` is meaningful."""
    output: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Tracer:
    """
    Creates spans and hands finished ones to a span processor.

    Usage::

        tracer = Tracer(processor)

        with tracer.track("researcher"):
            with tracer.llm("plan", model="gpt-4o") as span:
                span.set_usage(120, 40)
            result = tracer.run_tool("search", search, "query")

    A tracer without a processor still builds and nests spans but never
    exports them.
    """

    def __init__(
        self,
        processor: Optional[SpanProcessor] = None,
        capture_content: bool = False,
    ):
        self.processor = processor
        self.capture_content = capture_content

    @property
    def exporting(self) -> bool:
        return self.processor is not None

    # ------------------------------------------------------------------
    # Span lifecycle
    # ------------------------------------------------------------------

    def start_span(
        self,
        name: str,
        kind: SpanKind | str = SpanKind.INTERNAL,
        attributes: Optional[dict[str, Any]] = None,
        parent: Optional[Span] = None,
        agent: Optional[str] = None,
    ) -> Span:
        """
        Create a span without making it current. The parent defaults to the
        current span; without one the span starts a new trace.
        """
        if parent is None:
            parent = get_current_span()

        linkage: dict[str, Any] = {}
        if parent is not None:
            linkage = {"trace_id": parent.trace_id, "parent_span_id": parent.span_id}

        span = Span(
            name=name,
            kind=SpanKind(kind),
            agent=agent or get_current_agent(),
            attributes=dict(attributes or {}),
            **linkage,
        )
        span._on_end = self._dispatch
        return span

    def end_span(self, span: Span) -> None:
        span.end()

    def _dispatch(self, span: Span) -> None:
        if self.processor is None:
            return
        try:
            self.processor.on_end(span)
        except Exception:  # noqa: BLE001
            logger.debug("Span processor failed for span %s", span.span_id, exc_info=True)

    @contextmanager
    def _scope(
        self,
        name: str,
        kind: SpanKind | str,
        attributes: Optional[dict[str, Any]] = None,
        agent: Optional[str] = None,
    ):
        span = self.start_span(name, kind=kind, attributes=attributes, agent=agent)
        span_token = use_span(span)
        agent_token = use_agent(agent) if agent else None
        try:
            yield span
        except BaseException as exc:
            span.record_exception(exc)
            raise
        finally:
            if agent_token is not None:
                reset_agent(agent_token)
            reset_span(span_token)
            span.end()

    @contextmanager
    def span(
        self,
        name: str,
        kind: SpanKind | str = SpanKind.INTERNAL,
        attributes: Optional[dict[str, Any]] = None,
    ):
        """
        Context manager for a span that is current for the duration of the block.

        with tracer.span("rerank", kind="chain") as span:
            span.set_attribute("candidates", 20)
        """
        with self._scope(name, kind, attributes) as span:
            yield span

    @asynccontextmanager
    async def aspan(
        self,
        name: str,
        kind: SpanKind | str = SpanKind.INTERNAL,
        attributes: Optional[dict[str, Any]] = None,
    ):
        """Async version of span(); ending a span never blocks, so no executor is needed."""
        with self._scope(name, kind, attributes) as span:
            yield span

    # ------------------------------------------------------------------
    # Agents, LLM calls and tools
    # ------------------------------------------------------------------

    def track(
        self,
        agent: str,
        fn: Optional[Callable[[], Any]] = None,
        *,
        attributes: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Mark a logical agent boundary. Spans created inside carry ``agent``.

        with tracer.track("researcher"):
            ...

        @tracer.track("researcher")
        async def research(query): ...

        answer = tracer.track("researcher", lambda: run(query))
        """
        boundary = _Boundary(self, agent, SpanKind.AGENT, attributes, agent=agent)
        if fn is not None:
            return boundary(fn)()
        return boundary

    def llm(
        self,
        name: str = "llm",
        model: Optional[str] = None,
        provider: Optional[str] = None,
        attributes: Optional[dict[str, Any]] = None,
    ) -> "_Boundary":
        """
        Boundary for a single LLM request.

        with tracer.llm("summarize", model="gpt-4o-mini") as span:
            response = client.chat.completions.create(...)
            span.set_usage(response.usage.prompt_tokens, response.usage.completion_tokens)
        """
        attrs = dict(attributes or {})
        if provider:
            attrs["provider"] = provider
        return _Boundary(self, name, SpanKind.LLM, attrs, model=model)

    def tool(
        self,
        name: Optional[str] = None,
        attributes: Optional[dict[str, Any]] = None,
    ) -> "_Boundary":
        """Boundary for a tool call; usable as context manager or decorator."""
        return _Boundary(self, name, SpanKind.TOOL, attributes)

    def run_tool(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> ToolResult:
        """
        Run a tool inside a tool span. Failures are recorded on the span and
        returned as ``ToolResult.error`` instead of raised.
        """
        span = self.start_span(name, kind=SpanKind.TOOL)
        if self.capture_content:
            span.input = capture_args(args, kwargs)
        token = use_span(span)
        try:
            output = fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            span.record_exception(exc)
            return ToolResult(error=f"{type(exc).__name__}: {exc}")
        else:
            if self.capture_content:
                span.output = capture_output(output)
            return ToolResult(output=output)
        finally:
            reset_span(token)
            span.end()

    async def arun_tool(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> ToolResult:
        """Async version of run_tool()."""
        span = self.start_span(name, kind=SpanKind.TOOL)
        if self.capture_content:
            span.input = capture_args(args, kwargs)
        token = use_span(span)
        try:
            output = await fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            span.record_exception(exc)
            return ToolResult(error=f"{type(exc).__name__}: {exc}")
        else:
            if self.capture_content:
                span.output = capture_output(output)
            return ToolResult(output=output)
        finally:
            reset_span(token)
            span.end()


class _Boundary:
    """
    A span scope usable as a sync/async context manager or as a decorator.
    Each ``with`` entry opens its own span; decorated callables open one
    span per call. Open scopes are tracked per context, so one boundary
    can be entered concurrently from several threads or tasks.

    A boundary created without a tracer resolves the global tracer each
    time it opens a span, so it follows later ``init()`` calls.
    """

    def __init__(
        self,
        tracer: Optional[Tracer],
        name: Optional[str],
        kind: SpanKind,
        attributes: Optional[dict[str, Any]] = None,
        agent: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self._tracer = tracer
        self.name = name
        self.kind = kind
        self.attributes = attributes
        self.agent = agent
        self.model = model
        self._active: ContextVar[tuple] = ContextVar(f"spanora_boundary_{id(self)}", default=())

    @property
    def tracer(self) -> Tracer:
        return self._tracer if self._tracer is not None else get_tracer()

    @contextmanager
    def _open(self, name: str):
        with self.tracer._scope(name, self.kind, self.attributes, agent=self.agent) as span:
            if self.model:
                span.model = self.model
            yield span

    def __enter__(self) -> Span:
        scope = self._open(self.name or self.kind.value)
        span = scope.__enter__()
        self._active.set(self._active.get() + (scope,))
        return span

    def __exit__(self, exc_type, exc, tb):
        stack = self._active.get()
        self._active.set(stack[:-1])
        return stack[-1].__exit__(exc_type, exc, tb)

    async def __aenter__(self) -> Span:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb):
        return self.__exit__(exc_type, exc, tb)

    def __call__(self, func: Callable) -> Callable:
        name = self.name or func.__name__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                capture = self.tracer.capture_content
                with self._open(name) as span:
                    if capture:
                        span.input = capture_args(args, kwargs)
                    result = await func(*args, **kwargs)
                    if capture:
                        span.output = capture_output(result)
                    return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            capture = self.tracer.capture_content
            with self._open(name) as span:
                if capture:
                    span.input = capture_args(args, kwargs)
                result = func(*args, **kwargs)
                if capture:
                    span.output = capture_output(result)
                return result
        return sync_wrapper


# ======================================================================
# Global tracer and lifecycle
# ======================================================================

_global_tracer: Optional[Tracer] = None
_lifecycle_lock = threading.RLock()
_atexit_registered = False


def _build_processor(settings: SpanoraSettings) -> Optional[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if settings.export_enabled:
        exporter = HttpSpanExporter(
            endpoint=settings.endpoint,
            api_key=settings.api_key,
            timeout=settings.export_timeout,
            max_retries=settings.max_retries,
            resource=settings.resource,
        )
        processors.append(
            BatchSpanProcessor(
                exporter,
                max_queue_size=settings.max_queue_size,
                max_batch_size=settings.max_batch_size,
                schedule_delay=settings.flush_interval,
            )
        )
    if settings.debug:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))

    if not processors:
        return None
    if len(processors) == 1:
        return processors[0]
    return MultiSpanProcessor(processors)


def _enable_debug_logging() -> None:
    sdk_logger = logging.getLogger("spanora")
    sdk_logger.setLevel(logging.DEBUG)
    if not sdk_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        sdk_logger.addHandler(handler)


def _resolve_settings(overrides: dict[str, Any]) -> Optional[SpanoraSettings]:
    """
    Build settings from explicit arguments and the environment.

    Bad explicit arguments raise ``ConfigurationError``. A bad environment
    is logged and returns None so the host keeps running without export.
    """
    unknown = sorted(set(overrides) - set(SpanoraSettings.model_fields))
    if unknown:
        raise ConfigurationError(f"Unknown setting(s) passed to init(): {', '.join(unknown)}")

    try:
        return SpanoraSettings(**overrides)
    except ValidationError as exc:
        error = exc

    try:
        SpanoraSettings()
    except ValidationError as env_exc:
        logger.warning(
            "Invalid SPANORA_* environment settings; spans will not be exported: %s", env_exc
        )
        return None
    raise ConfigurationError(str(error)) from error


def init(
    api_key: Optional[str] = None,
    endpoint: Optional[str] = None,
    **overrides: Any,
) -> Tracer:
    """
    Configure the global tracer. Explicit arguments win over ``SPANORA_*``
    environment variables. Calling ``init`` again flushes and replaces the
    previous tracer.
    """
    global _global_tracer, _atexit_registered

    if api_key is not None:
        overrides["api_key"] = api_key
    if endpoint is not None:
        overrides["endpoint"] = endpoint

    settings = _resolve_settings(overrides)
    if settings is None:
        tracer = Tracer()
    else:
        if settings.debug:
            _enable_debug_logging()

        if not settings.enabled:
            logger.info("Spanora disabled (SPANORA_ENABLED=false); spans will not be exported")
        elif not settings.api_key:
            logger.warning("SPANORA_API_KEY is not set; spans will not be exported")

        tracer = Tracer(
            processor=_build_processor(settings),
            capture_content=settings.capture_content,
        )

    with _lifecycle_lock:
        previous = _global_tracer
        _global_tracer = tracer
        if not _atexit_registered:
            atexit.register(shutdown)
            _atexit_registered = True

    if previous is not None and previous.processor is not None:
        previous.processor.shutdown()

    logger.debug(
        "Spanora initialised (endpoint=%s, exporting=%s)",
        settings.endpoint if settings else "-", tracer.exporting,
    )
    return tracer


def get_tracer() -> Tracer:
    """Get the global tracer; before ``init`` this tracer exports nothing."""
    global _global_tracer
    with _lifecycle_lock:
        if _global_tracer is None:
            _global_tracer = Tracer()
        return _global_tracer


def flush(timeout: float = 30.0) -> bool:
    """Block until all finished spans have been handed to the exporter."""
    tracer = _global_tracer
    if tracer is None or tracer.processor is None:
        return True
    return tracer.processor.force_flush(timeout)


def shutdown(timeout: float = 30.0) -> bool:
    """
    Flush and stop exporting. Idempotent; returns False if spans could not
    be delivered to the exporter within ``timeout``.
    """
    global _global_tracer
    with _lifecycle_lock:
        tracer = _global_tracer
        _global_tracer = None
    if tracer is None or tracer.processor is None:
        return True
    return tracer.processor.shutdown(timeout)


def reset_global_tracer() -> None:
    """Shut down and forget the global tracer (useful in tests)."""
    shutdown()


# ----------------------------------------------------------------------
# Module-level shortcuts
# ----------------------------------------------------------------------

def track(
    agent: str,
    fn: Optional[Callable[[], Any]] = None,
    *,
    attributes: Optional[dict[str, Any]] = None,
) -> Any:
    """
    Agent boundary on the global tracer. The tracer is looked up when a span
    opens, so functions decorated at import time report to the tracer that
    a later ``init()`` installs.
    """
    boundary = _Boundary(None, agent, SpanKind.AGENT, attributes, agent=agent)
    if fn is not None:
        return boundary(fn)()
    return boundary


def span(
    name: str,
    kind: SpanKind | str = SpanKind.INTERNAL,
    attributes: Optional[dict[str, Any]] = None,
) -> _Boundary:
    return _Boundary(None, name, SpanKind(kind), attributes)


def run_tool(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> ToolResult:
    return get_tracer().run_tool(name, fn, *args, **kwargs)
