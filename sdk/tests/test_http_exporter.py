import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import spanora.exporter as exporter_module
from spanora import ExportResult, HttpSpanExporter, Span
from spanora.exporter import normalize_endpoint


class Collector:
    """Scripted collector for httpx.MockTransport."""

    def __init__(self, *statuses: int, headers=None):
        self.statuses = list(statuses)
        self.headers = headers or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 202
        return httpx.Response(status, headers=self.headers, json={"accepted": 1})


def _exporter(handler, **kwargs) -> HttpSpanExporter:
    kwargs.setdefault("backoff_base", 0)
    return HttpSpanExporter(
        endpoint="http://collector.test",
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr(exporter_module.time, "sleep", sleeps.append)
    return sleeps


def test_export_posts_batch_with_bearer_auth():
    collector = Collector(202)
    exporter = _exporter(collector, resource={"service_name": "svc"})
    span = Span(name="hello")
    span.end()

    assert exporter.export([span]) == ExportResult.SUCCESS

    (request,) = collector.requests
    assert request.method == "POST"
    assert str(request.url) == "http://collector.test/api/v1/traces"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["User-Agent"].startswith("spanora-python/")
    body = json.loads(request.content)
    assert body["resource"] == {"service_name": "svc"}
    assert body["spans"][0]["span_id"] == span.span_id
    assert body["spans"][0]["status"] == "ok"


def test_retries_server_errors_then_succeeds(no_sleep):
    collector = Collector(503, 502, 202)
    exporter = _exporter(collector, max_retries=3, backoff_base=0.5)

    assert exporter.export([Span(name="retry")]) == ExportResult.SUCCESS
    assert len(collector.requests) == 3
    assert no_sleep == [0.5, 1.0]


def test_gives_up_after_max_retries():
    collector = Collector(500, 500, 500, 500)
    exporter = _exporter(collector, max_retries=2)

    assert exporter.export([Span(name="down")]) == ExportResult.FAILURE
    assert len(collector.requests) == 2


def test_retry_after_header_sets_wait_on_429(no_sleep):
    collector = Collector(429, 202, headers={"Retry-After": "2"})
    exporter = _exporter(collector, max_retries=3, backoff_base=0.5)

    assert exporter.export([Span(name="throttled")]) == ExportResult.SUCCESS
    assert no_sleep == [2.0]


@pytest.mark.parametrize("status", [400, 401, 403, 422])
def test_client_errors_are_not_retried(status):
    collector = Collector(status)
    exporter = _exporter(collector, max_retries=3)

    assert exporter.export([Span(name="rejected")]) == ExportResult.FAILURE
    assert len(collector.requests) == 1


def test_connection_errors_are_retried_and_contained():
    attempts = []

    def refuse(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    exporter = _exporter(refuse, max_retries=3)

    assert exporter.export([Span(name="offline")]) == ExportResult.FAILURE
    assert len(attempts) == 3


def test_circuit_opens_after_repeated_failures(monkeypatch):
    collector = Collector(*([500] * 10))
    exporter = _exporter(collector, max_retries=1)

    for _ in range(5):
        assert exporter.export([Span(name="fail")]) == ExportResult.FAILURE
    assert len(collector.requests) == 5

    # Open circuit: dropped without touching the network
    assert exporter.export([Span(name="skipped")]) == ExportResult.FAILURE
    assert len(collector.requests) == 5

    # Half-open once the cool-down elapsed
    monkeypatch.setattr(exporter, "_circuit_open_until", 0.0)
    collector.statuses = []
    assert exporter.export([Span(name="recovery")]) == ExportResult.SUCCESS
    assert exporter._consecutive_failures == 0


def test_half_open_circuit_lets_one_request_through():
    collector = Collector(*([500] * 5))
    exporter = _exporter(collector, max_retries=1)
    for _ in range(5):
        exporter.export([Span(name="fail")])

    exporter._circuit_open_until = 0.0

    assert exporter._is_circuit_open() is False
    # A second caller during the trial request is still turned away
    assert exporter._is_circuit_open() is True

    exporter._record_failure()
    assert exporter._is_circuit_open() is True

    exporter._circuit_open_until = 0.0
    assert exporter._is_circuit_open() is False
    exporter._record_success()
    assert exporter._is_circuit_open() is False
    assert exporter._is_circuit_open() is False


def test_export_after_shutdown_fails_without_request():
    collector = Collector()
    exporter = _exporter(collector)
    exporter.shutdown()

    assert exporter.export([Span(name="late")]) == ExportResult.FAILURE
    assert collector.requests == []


def test_empty_batch_is_a_no_op():
    collector = Collector()
    exporter = _exporter(collector)

    assert exporter.export([]) == ExportResult.SUCCESS
    assert collector.requests == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("http://localhost:8000", "http://localhost:8000/api/v1/traces"),
        ("http://localhost:8000/", "http://localhost:8000/api/v1/traces"),
        ("https://spanora.ai/api/v1/traces", "https://spanora.ai/api/v1/traces"),
        ("https://proxy.local/custom/ingest/", "https://proxy.local/custom/ingest"),
    ],
)
def test_normalize_endpoint(raw, expected):
    assert normalize_endpoint(raw) == expected
