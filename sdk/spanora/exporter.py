"""
Span exporters: HTTP transport to the Spanora collector, plus console and
in-memory exporters for debugging and tests.

The HTTP exporter is built to never crash the instrumented application:
- Retry with exponential backoff (honours ``Retry-After`` on 429)
- Circuit breaker when the collector keeps failing
- Request timeout management
- Structured logging of every dropped batch
"""
from __future__ import annotations

import enum
import json
import logging
import sys
import threading
import time
from typing import IO, Any, Optional, Sequence
from urllib.parse import urlparse

import httpx

from ._version import __version__
from .config import DEFAULT_ENDPOINT
from .models import Span, TraceBatch

logger = logging.getLogger("spanora.exporter")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BACKOFF_BASE = 0.5          # seconds
_DEFAULT_BACKOFF_MAX = 10.0          # seconds
_CIRCUIT_OPEN_THRESHOLD = 5          # consecutive failures before opening
_CIRCUIT_HALF_OPEN_AFTER = 30.0      # seconds before trying again
TRACES_PATH = "/api/v1/traces"


class ExportResult(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SpanExporter:
    """Interface for span exporters."""

    def export(self, spans: Sequence[Span]) -> ExportResult:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


def normalize_endpoint(endpoint: str) -> str:
    """A bare collector URL gets the traces path appended."""
    endpoint = endpoint.strip().rstrip("/")
    if urlparse(endpoint).path in ("", "/"):
        return endpoint + TRACES_PATH
    return endpoint


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpSpanExporter(SpanExporter):
    """
    Sends span batches to ``POST {endpoint}`` with bearer-token auth.

    Key design principle: **never crash the host application**.
    Every network/server error is logged and reported as
    ``ExportResult.FAILURE``; nothing is raised to the caller.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        backoff_base: float = _DEFAULT_BACKOFF_BASE,
        backoff_max: float = _DEFAULT_BACKOFF_MAX,
        resource: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = normalize_endpoint(endpoint)
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.resource = dict(resource or {})

        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._shutdown = False

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until = 0.0
        self._trial_in_flight = False
        self._breaker_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def _default_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "User-Agent": f"spanora-python/{__version__}",
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers=self._default_headers,
                transport=self._transport,
            )
        return self._client

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def _is_circuit_open(self) -> bool:
        """Check if the circuit breaker is open (collector assumed down)."""
        with self._breaker_lock:
            if self._consecutive_failures < _CIRCUIT_OPEN_THRESHOLD:
                return False
            if time.monotonic() < self._circuit_open_until or self._trial_in_flight:
                return True
            # Half-open: let exactly one trial export through
            self._trial_in_flight = True
            return False

    def _record_success(self) -> None:
        with self._breaker_lock:
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def _record_failure(self) -> None:
        with self._breaker_lock:
            self._trial_in_flight = False
            self._consecutive_failures += 1
            opened = self._consecutive_failures >= _CIRCUIT_OPEN_THRESHOLD
            if opened:
                self._circuit_open_until = time.monotonic() + _CIRCUIT_HALF_OPEN_AFTER
        if opened:
            logger.warning(
                "Circuit breaker OPEN after %d consecutive export failures; "
                "retrying in %.0fs.",
                self._consecutive_failures,
                _CIRCUIT_HALF_OPEN_AFTER,
            )

    # ------------------------------------------------------------------
    # SpanExporter
    # ------------------------------------------------------------------

    def export(self, spans: Sequence[Span]) -> ExportResult:
        if not spans:
            return ExportResult.SUCCESS
        if self._shutdown:
            logger.debug("Exporter already shut down; dropping %d spans", len(spans))
            return ExportResult.FAILURE

        try:
            body = TraceBatch(spans=list(spans), resource=self.resource).model_dump_json()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to encode span batch")
            return ExportResult.FAILURE

        if self._is_circuit_open():
            logger.debug("Circuit breaker open; dropping %d spans", len(spans))
            return ExportResult.FAILURE

        last_error: Optional[str] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.client.post(self.endpoint, content=body)

                if response.status_code < 400:
                    self._record_success()
                    logger.debug("Exported %d spans to %s", len(spans), self.endpoint)
                    return ExportResult.SUCCESS

                if response.status_code in _RETRYABLE_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                    if attempt < self.max_retries:
                        wait = self._backoff(attempt)
                        retry_after = _retry_after_seconds(response)
                        if response.status_code == 429 and retry_after is not None:
                            wait = min(retry_after, self.backoff_max)
                        logger.warning(
                            "Retryable %d from collector (attempt %d/%d), backoff %.2fs",
                            response.status_code, attempt, self.max_retries, wait,
                        )
                        time.sleep(wait)
                        continue
                    self._record_failure()
                    break

                # Non-retryable: the collector is reachable but rejected the batch
                self._record_success()
                if response.status_code in (401, 403):
                    logger.error(
                        "Collector rejected credentials (HTTP %d); check SPANORA_API_KEY. "
                        "Dropping %d spans.",
                        response.status_code, len(spans),
                    )
                else:
                    logger.warning(
                        "HTTP %d from collector, dropping %d spans: %s",
                        response.status_code, len(spans), response.text[:200],
                    )
                return ExportResult.FAILURE

            except httpx.TimeoutException as exc:
                last_error = f"timeout: {exc}"
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        "Timeout exporting spans (attempt %d/%d), backoff %.2fs",
                        attempt, self.max_retries, wait,
                    )
                    time.sleep(wait)
                    continue
                self._record_failure()

            except (httpx.TransportError, OSError) as exc:
                last_error = str(exc)
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        "Connection error exporting spans (attempt %d/%d): %s, backoff %.2fs",
                        attempt, self.max_retries, exc, wait,
                    )
                    time.sleep(wait)
                    continue
                self._record_failure()

            except Exception as exc:  # noqa: BLE001
                last_error = repr(exc)
                self._record_failure()
                break

        logger.error(
            "Dropping %d spans after %d attempts: %s",
            len(spans), self.max_retries, last_error,
        )
        return ExportResult.FAILURE

    def shutdown(self) -> None:
        """Close the HTTP client and release resources."""
        self._shutdown = True
        if self._client and not self._client.is_closed:
            try:
                self._client.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error closing HTTP client: %s", exc)
        self._client = None


class ConsoleSpanExporter(SpanExporter):
    """Writes one JSON line per span; used in debug mode."""

    def __init__(self, stream: Optional[IO[str]] = None):
        self.stream = stream or sys.stderr
        self._lock = threading.Lock()

    def export(self, spans: Sequence[Span]) -> ExportResult:
        try:
            with self._lock:
                for span in spans:
                    self.stream.write(json.dumps(span.model_dump(mode="json"), sort_keys=True) + "\n")
                self.stream.flush()
        except Exception:  # noqa: BLE001
            logger.debug("Console export failed", exc_info=True)
            return ExportResult.FAILURE
        return ExportResult.SUCCESS


class InMemorySpanExporter(SpanExporter):
    """Keeps exported spans in memory."""

    def __init__(self) -> None:
        self._spans: list[Span] = []
        self._lock = threading.Lock()
        self._shutdown = False

    def export(self, spans: Sequence[Span]) -> ExportResult:
        if self._shutdown:
            return ExportResult.FAILURE
        with self._lock:
            self._spans.extend(spans)
        return ExportResult.SUCCESS

    def get_finished_spans(self) -> list[Span]:
        with self._lock:
            return list(self._spans)

    def clear(self) -> None:
        with self._lock:
            self._spans.clear()

    def shutdown(self) -> None:
        self._shutdown = True
