from __future__ import annotations

import argparse
import getpass
import json
import re
import sys
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from .config import DEFAULT_ENDPOINT, SpanoraSettings
from .exporter import ExportResult, HttpSpanExporter, InMemorySpanExporter, normalize_endpoint
from .models import SpanKind
from .processor import SimpleSpanProcessor
from .tracer import Tracer

ENV_KEYS = ("SPANORA_API_KEY", "SPANORA_ENDPOINT")


def _find_project_root(start: Path | None = None) -> Path:
    start = start or Path.cwd()
    for candidate in [start, *start.parents]:
        if (candidate / "pyproject.toml").exists():
            return candidate
        if (candidate / "requirements.txt").exists():
            return candidate
        if (candidate / ".git").exists():
            return candidate
    return start


_ENV_LINE_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=")


def _upsert_env(env_path: Path, updates: dict[str, str]) -> None:
    lines: list[str] = []
    if env_path.exists():
        lines = env_path.read_text().splitlines()

    key_to_index: dict[str, int] = {}
    for idx, line in enumerate(lines):
        match = _ENV_LINE_RE.match(line)
        if match:
            key_to_index[match.group(1)] = idx

    for key, value in updates.items():
        line_value = f"{key}={value}"
        if key in key_to_index:
            lines[key_to_index[key]] = line_value
        else:
            lines.append(line_value)

    env_path.write_text("\n".join(lines).rstrip() + "\n")


def _load_settings(root: Path) -> SpanoraSettings:
    return SpanoraSettings(_env_file=root / ".env")


def _request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    with httpx.Client(timeout=10.0) as client:
        return client.request(method, url, headers=headers, params=params)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _collector_origin(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    return f"{parsed.scheme}://{parsed.netloc}"


def _mask(key: Optional[str]) -> str:
    if not key:
        return "-"
    return key[:4] + "…" + key[-2:] if len(key) > 8 else "****"


def _command_init(_args: argparse.Namespace) -> int:
    root = _find_project_root()
    env_path = root / ".env"
    settings = _load_settings(root)

    api_key = getpass.getpass("Spanora API key: ").strip()
    if not api_key:
        print("API key is required.")
        return 1

    default_endpoint = settings.endpoint or DEFAULT_ENDPOINT
    endpoint_input = input(f"Endpoint [{default_endpoint}]: ").strip()
    endpoint = endpoint_input or default_endpoint

    _upsert_env(env_path, {"SPANORA_API_KEY": api_key, "SPANORA_ENDPOINT": endpoint})
    print(f"Updated {env_path} with {' and '.join(ENV_KEYS)}.")
    return 0


def _command_status(args: argparse.Namespace) -> int:
    settings = _load_settings(_find_project_root())
    endpoint = normalize_endpoint(settings.endpoint)
    health_url = f"{_collector_origin(endpoint)}/health"

    payload: dict[str, Any] = {
        "endpoint": endpoint,
        "api_key": {"configured": bool(settings.api_key), "value": _mask(settings.api_key)},
        "enabled": settings.enabled,
    }

    try:
        health_resp = _request_json("GET", health_url)
        health: dict[str, Any] = {"ok": health_resp.status_code == 200}
        if health_resp.status_code == 200:
            try:
                health.update(health_resp.json())
            except ValueError:
                health = {"ok": False, "error": "Invalid JSON from /health"}
        else:
            health["error"] = f"HTTP {health_resp.status_code}"
    except httpx.RequestError as exc:
        health = {"ok": False, "error": str(exc)}
    payload["health"] = health

    if args.json:
        _print_json(payload)
    else:
        print(f"Endpoint: {endpoint}")
        print(f"API key: {'set' if settings.api_key else 'missing'} ({_mask(settings.api_key)})")
        print(f"Health: {'ok' if health.get('ok') else 'error'}"
              + (f" ({health['error']})" if health.get("error") else ""))
    return 0 if health.get("ok") and settings.api_key else 1


def _command_test(args: argparse.Namespace) -> int:
    settings = _load_settings(_find_project_root())
    if not settings.api_key:
        print("SPANORA_API_KEY not set. Run `spanora init` first.")
        return 1

    collected = InMemorySpanExporter()
    tracer = Tracer(processor=SimpleSpanProcessor(collected))
    with tracer.track("spanora-cli") as root:
        with tracer.llm("test-llm", model="gpt-4o-mini", provider="spanora") as llm_span:
            llm_span.set_usage(12, 4)
        tracer.run_tool("test-tool", lambda: "ok")
    spans = collected.get_finished_spans()

    exporter = HttpSpanExporter(
        endpoint=settings.endpoint,
        api_key=settings.api_key,
        timeout=settings.export_timeout,
        max_retries=1,
        resource=settings.resource,
    )
    try:
        result = exporter.export(spans)
    finally:
        exporter.shutdown()

    ok = result == ExportResult.SUCCESS
    if args.json:
        _print_json({
            "ok": ok,
            "endpoint": exporter.endpoint,
            "trace_id": root.trace_id,
            "spans": len(spans),
        })
    elif ok:
        print(f"Sent test trace {root.trace_id} ({len(spans)} spans) to {exporter.endpoint}")
    else:
        print(f"Failed to send test trace to {exporter.endpoint}; run with SPANORA_DEBUG=true for details.")
    return 0 if ok else 1


def _command_traces(args: argparse.Namespace) -> int:
    settings = _load_settings(_find_project_root())
    if not settings.api_key:
        print("SPANORA_API_KEY not set. Run `spanora init` first.")
        return 1

    try:
        resp = _request_json(
            "GET",
            normalize_endpoint(settings.endpoint),
            headers={"Authorization": f"Bearer {settings.api_key}"},
            params={"limit": max(1, args.last)},
        )
    except httpx.RequestError as exc:
        print(f"Trace list failed: {exc}")
        return 1
    if resp.status_code != 200:
        print(f"Trace list failed ({resp.status_code}).")
        print(resp.text)
        return 1

    traces = resp.json().get("traces", [])

    if args.json:
        result = [
            {
                "trace_id": t.get("trace_id"),
                "name": t.get("name"),
                "status": t.get("status"),
                "start_time": t.get("start_time"),
                "span_count": t.get("span_count"),
                "cost_usd": t.get("total_cost_usd"),
            }
            for t in traces
        ]
        _print_json(result)
        return 0

    if not traces:
        print("No traces found.")
        return 0

    print(f"Showing last {len(traces)} traces:")
    for trace in traces:
        trace_id = trace.get("trace_id", "-")
        name = trace.get("name", "-")
        status = trace.get("status", "-")
        started = trace.get("start_time", "-")
        spans = trace.get("span_count", 0)
        cost = trace.get("total_cost_usd") or 0.0
        print(f"- {trace_id} | {name} | {status} | {started} | {spans} spans | ${cost:.4f}")
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="spanora", description="Spanora CLI")
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Write SPANORA_API_KEY/SPANORA_ENDPOINT to .env")
    init_parser.set_defaults(func=_command_init)

    status_parser = subparsers.add_parser("status", help="Check collector health and configuration")
    status_parser.add_argument("--json", action="store_true", help="Output JSON")
    status_parser.set_defaults(func=_command_status)

    test_parser = subparsers.add_parser("test", help="Send a synthetic trace to the collector")
    test_parser.add_argument("--json", action="store_true", help="Output JSON")
    test_parser.set_defaults(func=_command_test)

    traces_parser = subparsers.add_parser("traces", help="List recent traces")
    traces_parser.add_argument("--last", type=int, default=5, help="Number of traces to show")
    traces_parser.add_argument("--json", action="store_true", help="Output JSON")
    traces_parser.set_defaults(func=_command_traces)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)
    sys.exit(args.func(args))
