import asyncio
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import spanora.tracer as tracer_module
from spanora import (
    InMemorySpanExporter,
    SimpleSpanProcessor,
    SpanKind,
    SpanStatus,
    Tracer,
    get_current_agent,
    get_current_span,
    get_current_trace_id,
)


def _new_tracer(capture_content: bool = False) -> tuple[Tracer, InMemorySpanExporter]:
    exporter = InMemorySpanExporter()
    return Tracer(SimpleSpanProcessor(exporter), capture_content=capture_content), exporter


def setup_function():
    tracer_module._global_tracer = None


def teardown_function():
    tracer_module._global_tracer = None


def test_nested_spans_share_trace_and_link_parents():
    tracer, exporter = _new_tracer()

    with tracer.span("outer") as outer:
        assert get_current_span() is outer
        with tracer.span("inner") as inner:
            assert get_current_trace_id() == outer.trace_id
        assert get_current_span() is outer
    assert get_current_span() is None

    assert inner.trace_id == outer.trace_id
    assert inner.parent_span_id == outer.span_id
    assert outer.parent_span_id is None
    # Children end (and export) first
    assert [s.name for s in exporter.get_finished_spans()] == ["inner", "outer"]


def test_sibling_top_level_spans_start_new_traces():
    tracer, _ = _new_tracer()

    with tracer.span("first") as first:
        pass
    with tracer.span("second") as second:
        pass

    assert first.trace_id != second.trace_id
    assert len(first.trace_id) == 32
    assert len(first.span_id) == 16


def test_exception_marks_span_error_and_propagates():
    tracer, exporter = _new_tracer()

    with pytest.raises(ValueError):
        with tracer.span("explode"):
            raise ValueError("boom")

    (span,) = exporter.get_finished_spans()
    assert span.status == SpanStatus.ERROR
    assert span.error_type == "ValueError"
    assert span.error_message == "boom"
    assert span.events[0].name == "exception"
    assert get_current_span() is None


def test_track_sets_agent_for_nested_spans():
    tracer, exporter = _new_tracer()

    with tracer.track("researcher") as agent_span:
        assert get_current_agent() == "researcher"
        with tracer.llm("plan", model="gpt-4o", provider="openai") as llm_span:
            llm_span.set_usage(1000, 1000)
    assert get_current_agent() is None

    assert agent_span.kind == SpanKind.AGENT
    assert llm_span.agent == "researcher"
    assert llm_span.model == "gpt-4o"
    assert llm_span.attributes["provider"] == "openai"
    assert llm_span.usage.total_tokens == 2000
    assert llm_span.cost_usd == pytest.approx(0.0125)
    assert len(exporter.get_finished_spans()) == 2


def test_track_as_decorator_and_with_callable():
    tracer, exporter = _new_tracer()

    @tracer.track("writer")
    def write(topic):
        return f"draft about {topic}"

    assert write("bees") == "draft about bees"
    assert tracer.track("editor", lambda: 42) == 42

    spans = exporter.get_finished_spans()
    assert [(s.name, s.agent) for s in spans] == [("writer", "writer"), ("editor", "editor")]
    assert all(s.kind == SpanKind.AGENT for s in spans)


def test_same_boundary_reused_opens_a_span_per_entry():
    tracer, exporter = _new_tracer()
    boundary = tracer.tool("lookup")

    with boundary as first:
        pass
    with boundary as second:
        pass

    assert first.span_id != second.span_id
    assert len(exporter.get_finished_spans()) == 2


def test_run_tool_returns_error_instead_of_raising():
    tracer, exporter = _new_tracer()

    def flaky(x):
        raise RuntimeError(f"cannot handle {x}")

    with tracer.track("agent"):
        failed = tracer.run_tool("flaky", flaky, 3)
        succeeded = tracer.run_tool("double", lambda x: x * 2, 4)

    assert not failed.ok
    assert failed.error == "RuntimeError: cannot handle 3"
    assert succeeded.ok and succeeded.output == 8

    by_name = {s.name: s for s in exporter.get_finished_spans()}
    assert by_name["flaky"].status == SpanStatus.ERROR
    assert by_name["flaky"].kind == SpanKind.TOOL
    assert by_name["double"].status == SpanStatus.OK
    assert by_name["flaky"].parent_span_id == by_name["agent"].span_id


def test_content_capture_is_opt_in():
    quiet, quiet_exporter = _new_tracer()
    loud, loud_exporter = _new_tracer(capture_content=True)

    for tracer in (quiet, loud):
        tracer.run_tool("echo", lambda text: text.upper(), "hi")

    (quiet_span,) = quiet_exporter.get_finished_spans()
    (loud_span,) = loud_exporter.get_finished_spans()
    assert quiet_span.input is None and quiet_span.output is None
    assert loud_span.input == {"args": ["hi"]}
    assert loud_span.output == "HI"


def test_threads_do_not_share_current_span():
    tracer, exporter = _new_tracer()
    seen = {}

    def worker(name):
        with tracer.span(name) as span:
            seen[name] = span.parent_span_id

    with tracer.span("main"):
        threads = [threading.Thread(target=worker, args=(f"t{i}",)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    # Plain threads start with an empty context
    assert seen == {"t0": None, "t1": None, "t2": None}
    assert len(exporter.get_finished_spans()) == 4


def test_asyncio_tasks_inherit_parent_and_stay_isolated():
    tracer, exporter = _new_tracer()

    async def step(name):
        async with tracer.aspan(name) as span:
            await asyncio.sleep(0)
            assert get_current_span() is span
            return span

    async def main():
        async with tracer.track("orchestrator") as root:
            children = await asyncio.gather(step("a"), step("b"))
        return root, children

    root, children = asyncio.run(main())

    assert {c.parent_span_id for c in children} == {root.span_id}
    assert {c.agent for c in children} == {"orchestrator"}
    assert len(exporter.get_finished_spans()) == 3


def test_async_decorator_and_arun_tool():
    tracer, exporter = _new_tracer()

    @tracer.tool()
    async def fetch(url):
        return len(url)

    async def boom():
        raise KeyError("missing")

    async def main():
        size = await fetch("https://example.com")
        result = await tracer.arun_tool("boom", boom)
        return size, result

    size, result = asyncio.run(main())

    assert size == 19
    assert result.error == "KeyError: 'missing'"
    assert [s.name for s in exporter.get_finished_spans()] == ["fetch", "boom"]


def test_span_end_is_idempotent():
    tracer, exporter = _new_tracer()
    span = tracer.start_span("manual")

    assert span.end() is True
    first_end = span.end_time
    assert span.end(status=SpanStatus.ERROR) is False

    assert span.end_time == first_end
    assert span.status == SpanStatus.OK
    assert len(exporter.get_finished_spans()) == 1


def test_get_tracer_before_init_exports_nothing():
    tracer = tracer_module.get_tracer()

    assert tracer is tracer_module.get_tracer()
    assert not tracer.exporting
    with tracer_module.span("no-op") as span:
        pass
    assert span.is_ended


def test_module_decorators_follow_a_later_init():
    @tracer_module.track("researcher")
    def research():
        with tracer_module.span("lookup"):
            return "done"

    first, first_exporter = _new_tracer()
    tracer_module._global_tracer = first
    assert research() == "done"
    assert [s.name for s in first_exporter.get_finished_spans()] == ["lookup", "researcher"]

    second, second_exporter = _new_tracer()
    tracer_module._global_tracer = second
    research()

    assert len(first_exporter.get_finished_spans()) == 2
    assert [s.name for s in second_exporter.get_finished_spans()] == ["lookup", "researcher"]


def test_shared_boundary_survives_tasks_exiting_out_of_order():
    tracer, exporter = _new_tracer()
    boundary = tracer.track("worker")

    async def job(delay):
        async with boundary as span:
            await asyncio.sleep(delay)
        return span

    async def main():
        return await asyncio.gather(job(0.05), job(0.01))

    slow, fast = asyncio.run(main())

    assert slow.span_id != fast.span_id
    assert slow.is_ended and fast.is_ended
    assert slow.status == SpanStatus.OK and fast.status == SpanStatus.OK
    assert len(exporter.get_finished_spans()) == 2
    assert get_current_span() is None


def test_shared_boundary_across_threads():
    tracer, exporter = _new_tracer()
    boundary = tracer.span("step")
    barrier = threading.Barrier(4)
    errors = []

    def work():
        try:
            with boundary:
                barrier.wait(timeout=5)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(exporter.get_finished_spans()) == 4


def test_concurrent_end_reports_the_span_once():
    tracer, exporter = _new_tracer()
    span = tracer.start_span("contended")
    barrier = threading.Barrier(8)
    results = []

    def finish():
        barrier.wait(timeout=5)
        results.append(span.end())

    threads = [threading.Thread(target=finish) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(exporter.get_finished_spans()) == 1
