"""
Spanora Collector - reference ingestion service for the Spanora SDK
"""
from __future__ import annotations

import contextvars
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status

from config import get_settings
from routers import traces_router
from security import auth_health
from services.redis_service import RedisService

request_id_ctx = contextvars.ContextVar("request_id", default="-")
logger = logging.getLogger("spanora_collector")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

settings = get_settings()


def _validate_security_defaults():
    if settings.is_production and not settings.api_keys:
        raise RuntimeError("COLLECTOR_API_KEYS must be configured in production")
    if settings.api_keys_use_default and not settings.is_production:
        logger.warning(
            "COLLECTOR_API_KEYS not set; accepting the development key from COLLECTOR_DEV_API_KEY only"
        )


_validate_security_defaults()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - connect/disconnect Redis."""
    redis_service = RedisService(
        redis_url=settings.redis_url,
        trace_ttl_hours=settings.trace_ttl_hours,
    )

    app.state.redis_service = redis_service
    app.state.settings = settings
    app.state.started_at = datetime.now(timezone.utc)

    await redis_service.connect()
    logger.info("Connected to Redis")

    yield

    await redis_service.disconnect()
    logger.info("Disconnected from Redis")


app = FastAPI(
    title="Spanora Collector",
    description="Receives span batches from Spanora SDKs and serves them back as traces",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    token = request_id_ctx.set(request_id)
    request.state.request_id = request_id

    started = perf_counter()
    try:
        response = await call_next(request)
        elapsed_ms = round((perf_counter() - started) * 1000, 2)

        principal = getattr(request.state, "principal", None)
        subject = getattr(principal, "subject", "anonymous")
        logger.info(
            "request_id=%s method=%s path=%s status=%s latency_ms=%s subject=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            subject,
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        request_id_ctx.reset(token)


app.include_router(traces_router)


@app.get("/")
async def root():
    return {
        "name": "Spanora Collector",
        "version": "0.1.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check(request: Request, response: Response):
    redis_service = request.app.state.redis_service
    redis_ready = await redis_service.is_ready()

    if not redis_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "healthy" if redis_ready else "degraded",
        "request_id": request.state.request_id,
        "dependencies": {
            "redis": {"ready": redis_ready},
            "auth": auth_health(settings),
        },
        "build_version": settings.build_version,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
