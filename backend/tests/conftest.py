import os
import sys
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ["COLLECTOR_API_KEYS"] = "test-key,second-key"

from config import get_settings  # noqa: E402

get_settings.cache_clear()

from dependencies import get_redis  # noqa: E402
from main import app  # noqa: E402
from models.trace import Span, Trace  # noqa: E402


class FakeRedisService:
    def __init__(self) -> None:
        self.spans: dict[str, dict[str, Span]] = defaultdict(dict)
        self.resources: dict[str, dict] = {}
        self.first_seen: dict[str, float] = {}

    async def is_ready(self) -> bool:
        return True

    async def ingest_spans(self, spans: list[Span], resource: Optional[dict] = None) -> list[str]:
        touched: list[str] = []
        for span in spans:
            self.spans[span.trace_id][span.span_id] = span
            started = span.start_time.timestamp()
            self.first_seen[span.trace_id] = min(self.first_seen.get(span.trace_id, started), started)
            if resource:
                self.resources[span.trace_id] = resource
            if span.trace_id not in touched:
                touched.append(span.trace_id)
        return touched

    async def get_trace(self, trace_id: str) -> Optional[Trace]:
        spans = self.spans.get(trace_id)
        if not spans:
            return None
        return Trace.from_spans(trace_id, list(spans.values()), self.resources.get(trace_id))

    async def list_traces(self, offset: int = 0, limit: int = 50) -> list[Trace]:
        ordered = sorted(self.first_seen, key=self.first_seen.get, reverse=True)
        return [await self.get_trace(tid) for tid in ordered[offset : offset + limit]]

    async def count_traces(self) -> int:
        return len(self.first_seen)

    async def delete_trace(self, trace_id: str) -> bool:
        self.first_seen.pop(trace_id, None)
        self.resources.pop(trace_id, None)
        return self.spans.pop(trace_id, None) is not None


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": "Bearer test-key"}


@pytest.fixture
def client_and_store():
    fake_redis = FakeRedisService()

    @asynccontextmanager
    async def _no_op_lifespan(_app):
        _app.state.redis_service = fake_redis
        yield

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _no_op_lifespan
    app.dependency_overrides[get_redis] = lambda: fake_redis

    with TestClient(app) as client:
        yield client, fake_redis

    app.dependency_overrides.clear()
    app.router.lifespan_context = original_lifespan
