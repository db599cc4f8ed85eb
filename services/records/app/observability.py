from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from starlette.routing import Match

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from sqlalchemy.ext.asyncio import AsyncEngine

from services.records.app.logging import logger


REGISTRY = CollectorRegistry()
ProcessCollector(registry=REGISTRY)
PlatformCollector(registry=REGISTRY)
GCCollector(registry=REGISTRY)

# Route labels are path templates ("/departments/{dept_code}/students"), never raw paths.
HTTP_REQUESTS_TOTAL = Counter(
    "records_http_requests_total",
    "HTTP requests by route template and status class",
    ["route", "method", "status_class"],
    registry=REGISTRY,
)
HTTP_LATENCY = Histogram(
    "records_http_latency_ms",
    "HTTP request latency in milliseconds",
    ["route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
    registry=REGISTRY,
)

ALLOCATION_TOTAL = Counter(
    "identifier_allocations_total",
    "Identifier allocations by kind and outcome",
    ["kind", "outcome"],
    registry=REGISTRY,
)
EMAIL_PROBES = Histogram(
    "email_probe_count",
    "Existence checks issued per university email allocation",
    buckets=(1, 2, 3, 5, 10, 25, 50, 101),
    registry=REGISTRY,
)
POOL_TIMEOUT_TOTAL = Counter("pool_timeout_total", "Connection checkout timeouts", ["tenant"], registry=REGISTRY)


def setup_tracing(app: FastAPI, service_name: str) -> None:
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engines: list[AsyncEngine]) -> None:
    """
    Trace statements on the given tenant pools.

    The instrumentor is a process-wide singleton that ignores a second `instrument()`, so an
    earlier registration (a previous app lifespan) is removed first and the current pools win.
    """
    instrumentor = SQLAlchemyInstrumentor()
    if instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.uninstrument()
    instrumentor.instrument(engines=[e.sync_engine for e in engines])
    logger.info("sqlalchemy_instrumented", pools=len(engines))


def uninstrument_sqlalchemy() -> None:
    instrumentor = SQLAlchemyInstrumentor()
    if instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.uninstrument()


def route_template(request: Request) -> str:
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", "unmatched")
    return "unmatched"


def add_metrics_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics(request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        resp = await call_next(request)
        route = route_template(request)
        method = request.method
        HTTP_LATENCY.labels(route, method).observe((time.perf_counter() - start) * 1000)
        HTTP_REQUESTS_TOTAL.labels(route, method, f"{resp.status_code // 100}xx").inc()
        return resp

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
