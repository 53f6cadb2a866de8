"""
Deterministic smoke test for Spanora trace ingestion against a running collector.
"""
import os
import sys

import httpx

import spanora


def fail(message: str) -> None:
    print(f"[FAIL] {message}")
    raise SystemExit(1)


def main() -> None:
    base_url = os.getenv("SPANORA_ENDPOINT", "http://localhost:8000")
    api_key = os.getenv("SPANORA_API_KEY", "local-dev-key")
    tracer = spanora.init(api_key=api_key, endpoint=base_url, service_name="smoke-test")

    with tracer.track("smoke-agent") as agent_span:
        with tracer.llm("smoke-llm", model="gpt-4o-mini") as llm_span:
            llm_span.set_usage(25, 10)
        tool = tracer.run_tool("smoke-tool", lambda: {"tool_result": "success"})
        if not tool.ok:
            fail(f"Tool unexpectedly failed: {tool.error}")

    if not spanora.shutdown(timeout=10):
        fail("Spans were not delivered before the shutdown deadline")

    trace_id = agent_span.trace_id
    response = httpx.get(
        f"{base_url.rstrip('/')}/api/v1/traces/{trace_id}",
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=10.0,
    )
    if response.status_code != 200:
        fail(f"Trace not found after export (HTTP {response.status_code})")

    trace = response.json()
    spans = trace.get("spans") or []
    status = trace.get("status")

    if len(spans) != 3:
        fail(f"Expected 3 spans, got {len(spans)}")

    if status not in {"ok", "error"}:
        fail(f"Trace status is not terminal: {status}")

    print("[PASS] Smoke trace check successful")
    print(f"Trace ID: {trace_id}")
    print(f"Span count: {len(spans)}")
    print(f"Status: {status}")


if __name__ == "__main__":
    try:
        main()
    except SystemExit:
        raise
    except Exception as exc:
        print(f"[FAIL] Unexpected error: {exc}", file=sys.stderr)
        raise SystemExit(1)
