"""
Automatic instrumentation of the OpenAI and Anthropic Python SDKs.

``instrument()`` patches the SDKs' resource classes so that every
``create`` call becomes an ``llm`` span with provider, model, token usage
and cost. Streaming responses are wrapped: the span ends when the stream
is exhausted, closed, or fails. Tool calls found in responses are
recorded as span events.
"""
from __future__ import annotations

import importlib
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .context import reset_span, use_span
from .models import Span, SpanKind
from .serialization import capture_output, safe_serialize
from .tracer import get_tracer

logger = logging.getLogger("spanora.instrumentation")

_INSTRUMENTED = False
_ORIGINALS: dict[tuple[str, str, str], Callable] = {}
_REENTRANCY_GUARD: ContextVar[bool] = ContextVar(
    "spanora_instrument_guard", default=False
)

# Request kwargs worth keeping when content capture is on
_CAPTURED_REQUEST_KEYS = ("messages", "system", "tools", "tool_choice", "temperature", "max_tokens")


@dataclass(frozen=True)
class _Target:
    provider: str
    module: str
    cls: str
    method: str
    is_async: bool

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.module, self.cls, self.method)


_TARGETS = (
    _Target("openai", "openai.resources.chat.completions", "Completions", "create", False),
    _Target("openai", "openai.resources.chat.completions", "AsyncCompletions", "create", True),
    _Target("anthropic", "anthropic.resources.messages", "Messages", "create", False),
    _Target("anthropic", "anthropic.resources.messages", "AsyncMessages", "create", True),
)


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


# ----------------------------------------------------------------------
# Response extraction
# ----------------------------------------------------------------------

def _extract_openai_usage(result: Any) -> Optional[tuple[int, int]]:
    usage = _get(result, "usage")
    if usage is None:
        return None
    return int(_get(usage, "prompt_tokens", 0) or 0), int(_get(usage, "completion_tokens", 0) or 0)


def _extract_anthropic_usage(result: Any) -> Optional[tuple[int, int]]:
    usage = _get(result, "usage")
    if usage is None:
        return None
    return int(_get(usage, "input_tokens", 0) or 0), int(_get(usage, "output_tokens", 0) or 0)


def _record_openai_response(span: Span, result: Any, capture: bool) -> None:
    usage = _extract_openai_usage(result)
    if usage is not None:
        span.set_usage(*usage, model=_get(result, "model") or span.model)

    choices = _get(result, "choices") or []
    message = _get(choices[0], "message") if choices else None
    for call in _get(message, "tool_calls") or []:
        function = _get(call, "function")
        span.add_event(
            "tool_call",
            {"id": _get(call, "id"), "name": _get(function, "name")},
        )
    if capture and message is not None:
        span.output = safe_serialize(_get(message, "content"))


def _record_anthropic_response(span: Span, result: Any, capture: bool) -> None:
    usage = _extract_anthropic_usage(result)
    if usage is not None:
        span.set_usage(*usage, model=_get(result, "model") or span.model)

    texts = []
    for block in _get(result, "content") or []:
        block_type = _get(block, "type")
        if block_type == "tool_use":
            span.add_event("tool_call", {"id": _get(block, "id"), "name": _get(block, "name")})
        elif block_type == "text":
            texts.append(_get(block, "text") or "")
    if capture and texts:
        span.output = safe_serialize("".join(texts))


_RESPONSE_RECORDERS = {
    "openai": _record_openai_response,
    "anthropic": _record_anthropic_response,
}


# ----------------------------------------------------------------------
# Streaming
# ----------------------------------------------------------------------

class _StreamState:
    """Accumulates usage, tool calls and text from stream chunks."""

    def __init__(self, provider: str):
        self.provider = provider
        self.prompt_tokens: Optional[int] = None
        self.completion_tokens: Optional[int] = None
        self.model: Optional[str] = None
        self.tool_calls: list[dict[str, Any]] = []
        self.text: list[str] = []
        self.chunks = 0

    def observe(self, chunk: Any) -> None:
        self.chunks += 1
        try:
            if self.provider == "openai":
                self._observe_openai(chunk)
            else:
                self._observe_anthropic(chunk)
        except Exception:  # noqa: BLE001
            logger.debug("Could not inspect stream chunk", exc_info=True)

    def _observe_openai(self, chunk: Any) -> None:
        self.model = _get(chunk, "model") or self.model
        usage = _extract_openai_usage(chunk)
        if usage is not None:
            self.prompt_tokens, self.completion_tokens = usage
        for choice in _get(chunk, "choices") or []:
            delta = _get(choice, "delta")
            content = _get(delta, "content")
            if content:
                self.text.append(content)
            for call in _get(delta, "tool_calls") or []:
                name = _get(_get(call, "function"), "name")
                if name:
                    self.tool_calls.append({"id": _get(call, "id"), "name": name})

    def _observe_anthropic(self, event: Any) -> None:
        event_type = _get(event, "type")
        if event_type == "message_start":
            message = _get(event, "message")
            self.model = _get(message, "model") or self.model
            usage = _get(message, "usage")
            if usage is not None:
                self.prompt_tokens = int(_get(usage, "input_tokens", 0) or 0)
                self.completion_tokens = int(_get(usage, "output_tokens", 0) or 0)
        elif event_type == "message_delta":
            usage = _get(event, "usage")
            if usage is not None:
                self.completion_tokens = int(_get(usage, "output_tokens", 0) or 0)
        elif event_type == "content_block_start":
            block = _get(event, "content_block")
            if _get(block, "type") == "tool_use":
                self.tool_calls.append({"id": _get(block, "id"), "name": _get(block, "name")})
        elif event_type == "content_block_delta":
            text = _get(_get(event, "delta"), "text")
            if text:
                self.text.append(text)

    def apply(self, span: Span, capture: bool) -> None:
        span.set_attribute("stream.chunks", self.chunks)
        if self.prompt_tokens is not None or self.completion_tokens is not None:
            span.set_usage(
                self.prompt_tokens or 0,
                self.completion_tokens or 0,
                model=self.model or span.model,
            )
        for call in self.tool_calls:
            span.add_event("tool_call", call)
        if capture and self.text:
            span.output = safe_serialize("".join(self.text))


class _StreamProxy:
    """Wraps a sync or async stream; the span ends when the stream does."""

    def __init__(self, stream: Any, span: Span, provider: str, capture: bool):
        self._stream = stream
        self._span = span
        self._state = _StreamState(provider)
        self._capture = capture

    def _finish(self, exc: Optional[BaseException] = None) -> None:
        if self._span.is_ended:
            return
        if exc is not None:
            self._span.record_exception(exc)
        self._state.apply(self._span, self._capture)
        self._span.end()

    # sync iteration
    def __iter__(self):
        try:
            for chunk in self._stream:
                self._state.observe(chunk)
                yield chunk
        except GeneratorExit:
            self._finish()
            raise
        except BaseException as exc:
            self._finish(exc)
            raise
        self._finish()

    def __enter__(self):
        if hasattr(self._stream, "__enter__"):
            self._stream.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if hasattr(self._stream, "__exit__"):
                return self._stream.__exit__(exc_type, exc, tb)
            return False
        finally:
            self._finish(exc)

    def close(self) -> None:
        try:
            close = getattr(self._stream, "close", None)
            if close is not None:
                close()
        finally:
            self._finish()

    # async iteration
    async def __aiter__(self):
        try:
            async for chunk in self._stream:
                self._state.observe(chunk)
                yield chunk
        except GeneratorExit:
            self._finish()
            raise
        except BaseException as exc:
            self._finish(exc)
            raise
        self._finish()

    async def __aenter__(self):
        if hasattr(self._stream, "__aenter__"):
            await self._stream.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if hasattr(self._stream, "__aexit__"):
                return await self._stream.__aexit__(exc_type, exc, tb)
            return False
        finally:
            self._finish(exc)

    async def aclose(self) -> None:
        try:
            aclose = getattr(self._stream, "close", None)
            if aclose is not None:
                result = aclose()
                if hasattr(result, "__await__"):
                    await result
        finally:
            self._finish()

    def __getattr__(self, name: str) -> Any:
        if name == "_stream":
            raise AttributeError(name)
        return getattr(self._stream, name)


# ----------------------------------------------------------------------
# Wrappers
# ----------------------------------------------------------------------

def _start_llm_span(target: _Target, kwargs: dict) -> Span:
    tracer = get_tracer()
    model = kwargs.get("model")
    span = tracer.start_span(
        f"{target.provider}.{target.cls}.{target.method}",
        kind=SpanKind.LLM,
        attributes={
            "provider": target.provider,
            "endpoint": f"{target.cls}.{target.method}",
            "stream": bool(kwargs.get("stream")),
        },
    )
    span.model = model
    if tracer.capture_content:
        span.input = safe_serialize({k: kwargs[k] for k in _CAPTURED_REQUEST_KEYS if k in kwargs})
    return span


def _finish_response(target: _Target, span: Span, kwargs: dict, result: Any) -> Any:
    capture = get_tracer().capture_content
    if kwargs.get("stream"):
        return _StreamProxy(result, span, target.provider, capture)
    try:
        _RESPONSE_RECORDERS[target.provider](span, result, capture)
    except Exception:  # noqa: BLE001
        logger.debug("Could not extract %s response details", target.provider, exc_info=True)
        if capture:
            span.output = capture_output(result)
    span.end()
    return result


def _wrap_sync(target: _Target, original: Callable) -> Callable:
    def wrapper(self, *args, **kwargs):
        if _REENTRANCY_GUARD.get():
            return original(self, *args, **kwargs)

        span = _start_llm_span(target, kwargs)
        guard_token = _REENTRANCY_GUARD.set(True)
        span_token = use_span(span)
        try:
            result = original(self, *args, **kwargs)
        except BaseException as exc:
            span.record_exception(exc)
            span.end()
            raise
        finally:
            reset_span(span_token)
            _REENTRANCY_GUARD.reset(guard_token)
        return _finish_response(target, span, kwargs, result)

    wrapper.__wrapped__ = original  # type: ignore[attr-defined]
    wrapper.__spanora_patched__ = True  # type: ignore[attr-defined]
    return wrapper


def _wrap_async(target: _Target, original: Callable) -> Callable:
    async def async_wrapper(self, *args, **kwargs):
        if _REENTRANCY_GUARD.get():
            return await original(self, *args, **kwargs)

        span = _start_llm_span(target, kwargs)
        guard_token = _REENTRANCY_GUARD.set(True)
        span_token = use_span(span)
        try:
            result = await original(self, *args, **kwargs)
        except BaseException as exc:
            span.record_exception(exc)
            span.end()
            raise
        finally:
            reset_span(span_token)
            _REENTRANCY_GUARD.reset(guard_token)
        return _finish_response(target, span, kwargs, result)

    async_wrapper.__wrapped__ = original  # type: ignore[attr-defined]
    async_wrapper.__spanora_patched__ = True  # type: ignore[attr-defined]
    return async_wrapper


def _patch(target: _Target) -> bool:
    try:
        module = importlib.import_module(target.module)
    except Exception:  # noqa: BLE001
        return False

    cls = getattr(module, target.cls, None)
    original = getattr(cls, target.method, None) if cls is not None else None
    if original is None:
        return False
    if getattr(original, "__spanora_patched__", False):
        return True

    _ORIGINALS[target.key] = original
    wrap = _wrap_async if target.is_async else _wrap_sync
    setattr(cls, target.method, wrap(target, original))
    logger.debug("Instrumented %s.%s.%s", target.module, target.cls, target.method)
    return True


def instrument() -> bool:
    """
    Patch installed LLM SDKs. Idempotent.
    Returns True if any SDK was instrumented.
    """
    global _INSTRUMENTED
    if _INSTRUMENTED:
        return True

    applied = False
    for target in _TARGETS:
        try:
            applied |= _patch(target)
        except Exception:  # noqa: BLE001
            logger.debug("Failed to instrument %s", target.key, exc_info=True)

    _INSTRUMENTED = applied
    return applied


def uninstrument() -> None:
    global _INSTRUMENTED

    for key, original in list(_ORIGINALS.items()):
        module_name, cls_name, method = key
        try:
            module = importlib.import_module(module_name)
            setattr(getattr(module, cls_name), method, original)
        except Exception:  # noqa: BLE001
            logger.debug("Failed to restore %s", key, exc_info=True)
        finally:
            _ORIGINALS.pop(key, None)

    _INSTRUMENTED = False


def is_instrumented() -> bool:
    return _INSTRUMENTED
