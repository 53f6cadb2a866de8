"""
Redis service for trace persistence.

Layout:
- ``spanora:trace:{id}:spans`` hash of span_id -> span JSON (re-sent spans overwrite)
- ``spanora:trace:{id}:resource`` resource attributes of the last batch
- ``spanora:trace:index`` sorted set of trace ids scored by earliest start time
"""
import json
import logging
from collections import defaultdict
from typing import Any, Optional

import redis.asyncio as redis

from models.trace import Span, Trace

logger = logging.getLogger(__name__)


class RedisService:
    """
    Async Redis service for the Spanora collector.
    Handles span ingestion and trace retrieval.
    """

    TRACE_PREFIX = "spanora:trace:"
    INDEX_KEY = "spanora:trace:index"

    def __init__(self, redis_url: str = "redis://localhost:6379", trace_ttl_hours: int = 72):
        self.redis_url = redis_url
        self.trace_ttl_hours = trace_ttl_hours
        self.redis: Optional[redis.Redis] = None

    def _spans_key(self, trace_id: str) -> str:
        return f"{self.TRACE_PREFIX}{trace_id}:spans"

    def _resource_key(self, trace_id: str) -> str:
        return f"{self.TRACE_PREFIX}{trace_id}:resource"

    async def connect(self):
        """Connect to Redis."""
        self.redis = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self.redis.ping()

    async def disconnect(self):
        """Disconnect from Redis."""
        if self.redis:
            await self.redis.aclose()

    async def is_ready(self) -> bool:
        if not self.redis:
            return False
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False

    async def ingest_spans(self, spans: list[Span], resource: Optional[dict[str, Any]] = None) -> list[str]:
        """Store spans grouped by trace; returns the affected trace ids."""
        by_trace: dict[str, list[Span]] = defaultdict(list)
        for span in spans:
            by_trace[span.trace_id].append(span)

        ttl_seconds = self.trace_ttl_hours * 3600
        pipe = self.redis.pipeline(transaction=True)
        for trace_id, group in by_trace.items():
            spans_key = self._spans_key(trace_id)
            pipe.hset(spans_key, mapping={s.span_id: s.model_dump_json() for s in group})
            pipe.expire(spans_key, ttl_seconds)
            if resource:
                pipe.set(self._resource_key(trace_id), json.dumps(resource), ex=ttl_seconds)
            earliest = min(s.start_time for s in group).timestamp()
            # Keep the earliest start seen for the trace
            pipe.zadd(self.INDEX_KEY, {trace_id: earliest}, lt=True)
        await pipe.execute()

        logger.debug("Ingested %d spans across %d traces", len(spans), len(by_trace))
        return list(by_trace)

    async def get_trace(self, trace_id: str) -> Optional[Trace]:
        raw_spans = await self.redis.hgetall(self._spans_key(trace_id))
        if not raw_spans:
            return None
        spans = [Span.model_validate_json(data) for data in raw_spans.values()]
        raw_resource = await self.redis.get(self._resource_key(trace_id))
        resource = json.loads(raw_resource) if raw_resource else {}
        return Trace.from_spans(trace_id, spans, resource)

    async def list_traces(self, offset: int = 0, limit: int = 50) -> list[Trace]:
        trace_ids = await self.redis.zrevrange(self.INDEX_KEY, offset, offset + limit - 1)

        traces = []
        for tid in trace_ids:
            trace = await self.get_trace(tid)
            if trace is None:
                # Span hash expired; drop the stale index entry
                await self.redis.zrem(self.INDEX_KEY, tid)
                continue
            traces.append(trace)
        return traces

    async def count_traces(self) -> int:
        return await self.redis.zcard(self.INDEX_KEY)

    async def delete_trace(self, trace_id: str) -> bool:
        removed = await self.redis.delete(self._spans_key(trace_id), self._resource_key(trace_id))
        await self.redis.zrem(self.INDEX_KEY, trace_id)
        return bool(removed)
