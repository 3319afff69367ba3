"""
Prometheus metrics for the proxy.

Request counters, latency histograms and the /metrics route come from
prometheus-fastapi-instrumentator. The proxy adds its own per-route counters
on top. Each application owns its own CollectorRegistry so several apps
(tests, embedded use) can coexist in one process.
"""

from fastapi import FastAPI
from prometheus_client import CollectorRegistry, Counter, Info
from prometheus_fastapi_instrumentator import Instrumentator

from mindshare_proxy.errors import UpstreamError
from mindshare_proxy.forwarding.engine import LoggingHooks, RequestContext


class ProxyMetrics:
    def __init__(self, service_name: str):
        self.registry = CollectorRegistry()
        self.forwarded_total = Counter(
            "proxy_forwarded_requests_total",
            "Requests forwarded upstream by route",
            ["route"],
            registry=self.registry,
        )
        self.upstream_errors_total = Counter(
            "proxy_upstream_errors_total",
            "Upstream failures by route and kind",
            ["route", "kind"],
            registry=self.registry,
        )
        # Add app_name to the metrics
        app_info = Info("proxy_app_info", "Application Info", registry=self.registry)
        app_info.info({"app_name": service_name})


def _route_label(context: RequestContext) -> str:
    return "fallback" if context.resolution.fallback else context.binding.prefix


class MetricsHooks(LoggingHooks):
    """Logging hooks that also count forwarded requests and upstream failures."""

    def __init__(self, metrics: ProxyMetrics):
        self.metrics = metrics

    async def on_request(self, context, outbound):
        self.metrics.forwarded_total.labels(route=_route_label(context)).inc()
        await super().on_request(context, outbound)

    async def on_error(self, context: RequestContext, error: UpstreamError):
        self.metrics.upstream_errors_total.labels(
            route=_route_label(context), kind=error.label
        ).inc()
        await super().on_error(context, error)


def instrument_app(
    app: FastAPI, metrics: ProxyMetrics, endpoint: str
) -> Instrumentator:
    instrumentator = Instrumentator(
        registry=metrics.registry, excluded_handlers=[endpoint]
    )
    instrumentator.instrument(app).expose(
        app, endpoint=endpoint, include_in_schema=False
    )
    return instrumentator
