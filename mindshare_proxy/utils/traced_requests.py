from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    target_url: str,
    route: Optional[str],
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span and set the common proxy attributes."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.target_url", target_url)
        if route:
            span.set_attribute("proxy.route", route)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        yield span
