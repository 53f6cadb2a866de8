"""
Safe capture of function inputs/outputs for span payloads.
"""
from __future__ import annotations

import dataclasses
from typing import Any, Optional

_MAX_CAPTURE_LEN = 2000  # max chars per captured string
_MAX_DEPTH = 6
_MAX_ITEMS = 100


def _truncate(text: str, max_len: int) -> str:
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


def safe_serialize(value: Any, max_len: int = _MAX_CAPTURE_LEN, _depth: int = 0) -> Any:
    """
    Convert a value into something JSON-serializable.
    Never raises; falls back to a truncated repr or a type placeholder.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _truncate(value, max_len)

    if _depth >= _MAX_DEPTH:
        return _truncate(repr(value), max_len)

    try:
        if isinstance(value, dict):
            return {
                str(k): safe_serialize(v, max_len, _depth + 1)
                for k, v in list(value.items())[:_MAX_ITEMS]
            }
        if isinstance(value, (list, tuple, set, frozenset)):
            return [safe_serialize(v, max_len, _depth + 1) for v in list(value)[:_MAX_ITEMS]]
        if hasattr(value, "model_dump"):
            # Pydantic model support
            return safe_serialize(value.model_dump(), max_len, _depth + 1)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return safe_serialize(dataclasses.asdict(value), max_len, _depth + 1)
        if hasattr(value, "__dict__") and not callable(value):
            return safe_serialize(vars(value), max_len, _depth + 1)
        return _truncate(repr(value), max_len)
    except Exception:  # noqa: BLE001
        return f"<unserializable: {type(value).__name__}>"


def capture_args(args: tuple, kwargs: dict) -> dict:
    """Capture function arguments safely."""
    try:
        result = {}
        if args:
            result["args"] = safe_serialize(args)
        if kwargs:
            result["kwargs"] = safe_serialize(kwargs)
        return result
    except Exception:  # noqa: BLE001
        return {"_capture_error": "Failed to capture arguments"}


def capture_output(value: Any) -> Optional[Any]:
    """Capture function return value safely."""
    if value is None:
        return None
    return safe_serialize(value)
