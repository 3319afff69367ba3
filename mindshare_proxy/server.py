import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from mindshare_proxy.config import METRICS_PATH, ProxySettings, load_settings
from mindshare_proxy.errors import ConfigError
from mindshare_proxy.forwarding.engine import ForwardingEngine, ForwardingHooks
from mindshare_proxy.metrics import MetricsHooks, ProxyMetrics, instrument_app
from mindshare_proxy.routes import render_landing_page, router
from mindshare_proxy.vars import LOG_LEVEL, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")


# ASGI send/receive events emitted once per relayed body chunk
CHUNK_EVENTS = frozenset({"http.response.body", "http.request"})


class FilteringSpanExporter(SpanExporter):
    """
    Exporter wrapper that drops per-chunk ASGI spans.

    The FastAPI instrumentation opens a span for every ``send``/``receive``
    call. Streamed uploads and downloads relayed by the proxy would turn into
    thousands of those, so only the request, ``proxy_request`` and response
    start spans are passed on.
    """

    def __init__(self, exporter: SpanExporter, dropped_events=CHUNK_EVENTS):
        self.exporter = exporter
        self.dropped_events = frozenset(dropped_events)

    def _keep(self, span: ReadableSpan) -> bool:
        attributes = span.attributes or {}
        return attributes.get("asgi.event.type") not in self.dropped_events

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if self._keep(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(app: FastAPI, endpoint: Optional[str] = OTLP_ENDPOINT):
    """Install the SDK tracer provider and export spans over OTLP."""
    if not endpoint:
        return
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    otlp_exporter = OTLPSpanExporter(
        endpoint=endpoint,
        headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )
    FastAPIInstrumentor.instrument_app(app)


def create_app(
    settings: Optional[ProxySettings] = None,
    hooks: Optional[ForwardingHooks] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Settings are loaded from the environment when not given, so a missing
    or malformed target raises ConfigError here, before anything listens.
    """
    if settings is None:
        settings = load_settings()

    metrics = ProxyMetrics(SERVICE_NAME) if settings.metrics_enabled else None
    if hooks is None and metrics is not None:
        hooks = MetricsHooks(metrics)

    engine = ForwardingEngine(
        settings.route_table,
        timeout=settings.timeout,
        connect_timeout=settings.connect_timeout,
        max_connections=settings.max_connections,
        xfwd=settings.xfwd,
        hooks=hooks,
        transport=transport,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down, closing upstream connections")
        await engine.aclose()

    app = FastAPI(
        title="Mindshare Proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.landing_page = render_landing_page(settings.route_table)

    if metrics is not None:
        app.state.metrics = metrics
        instrument_app(app, metrics, METRICS_PATH)
    configure_tracing(app)

    # Catch-all proxy route goes last so /metrics stays reachable
    app.include_router(router)
    return app


def log_banner(settings: ProxySettings):
    table = settings.route_table
    logger.info("Proxy Configuration:")
    for prefix, target in table.routes.items():
        logger.info(f"   {prefix} -> {target}")
    if table.fallback:
        logger.info(f"   (fallback) -> {table.fallback.target}")
    base = f"http://{settings.host}:{settings.port}"
    logger.info(f"Mindshare Proxy running at {base}")
    for prefix in table.prefixes:
        logger.info(f"   {base}{prefix}")
    logger.info(f"   Health Check: {base}/health")


def main() -> int:
    logging.basicConfig(
        level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        settings = load_settings()
        app = create_app(settings)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    log_banner(settings)
    # uvicorn handles SIGTERM/SIGINT: stop accepting, drain, run lifespan shutdown
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=LOG_LEVEL.lower(),
        timeout_graceful_shutdown=settings.shutdown_grace_period,
    )
    logger.info("Proxy stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
