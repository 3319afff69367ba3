import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Tuple

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace

from mindshare_proxy.errors import (
    UpstreamError,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from mindshare_proxy.routing.route_table import Resolution, RouteBinding, RouteTable
from mindshare_proxy.utils import failure_reason
from mindshare_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def request_path(request: Request) -> str:
    """The inbound path exactly as the client sent it (percent escapes intact)."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


def _hop_by_hop(headers: List[Tuple[str, str]]) -> set:
    names = set(HOP_BY_HOP_HEADERS)
    for name, value in headers:
        if name == "connection":
            names.update(t.strip().lower() for t in value.split(",") if t.strip())
    return names


@dataclass(frozen=True)
class RequestContext:
    """What the engine knows about one in-flight request."""

    method: str
    path: str
    query: str
    resolution: Resolution
    target_url: str

    @property
    def binding(self) -> RouteBinding:
        return self.resolution.binding

    @property
    def target(self) -> str:
        return self.resolution.target


class ForwardingHooks:
    """Extension points around each forwarded request. The defaults do nothing."""

    async def on_request(self, context: RequestContext, outbound: httpx.Request):
        pass

    async def on_response(self, context: RequestContext, upstream: httpx.Response):
        pass

    async def on_error(self, context: RequestContext, error: UpstreamError):
        pass


class LoggingHooks(ForwardingHooks):
    async def on_request(self, context, outbound):
        logger.info(
            f"Proxying: {context.method} {context.path} -> {context.target_url}",
            extra={
                "method": context.method,
                "path": context.path,
                "target": context.target,
                "fallback": context.resolution.fallback,
            },
        )

    async def on_response(self, context, upstream):
        logger.debug(
            f"Upstream {context.target} answered {upstream.status_code} "
            f"for {context.method} {context.path}"
        )

    async def on_error(self, context, error):
        logger.error(
            f"Proxy error for {context.binding.prefix}: [{error.label}] {error.reason}",
            extra={
                "method": context.method,
                "path": context.path,
                "target": error.target,
                "reason": error.reason,
                "error_kind": error.label,
            },
        )


def bad_gateway_response(binding: RouteBinding, error: UpstreamError) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={
            "error": "Bad Gateway",
            "message": f"Failed to connect to {binding.name} backend",
            "reason": error.reason,
            "target": error.target,
        },
    )


def upstream_error(target: str, exc: Exception, timeout: float) -> UpstreamError:
    """Map a transport failure onto the proxy error taxonomy."""
    if isinstance(exc, asyncio.TimeoutError):
        return UpstreamTimeout(
            target, f"Upstream did not respond within {timeout:g}s"
        )
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeout(target, f"Timeout: {failure_reason(exc)}")
    if isinstance(exc, httpx.ConnectError):
        return UpstreamUnreachable(target, failure_reason(exc))
    if isinstance(exc, (httpx.ProtocolError, httpx.ReadError)):
        return UpstreamProtocolError(target, failure_reason(exc))
    return UpstreamUnreachable(target, failure_reason(exc))


class ForwardingEngine:
    """
    Relays inbound requests to the target picked by the route table.

    One pooled client per target is created up front; the engine keeps no
    per-request state so any number of requests may run concurrently.
    """

    def __init__(
        self,
        route_table: RouteTable,
        timeout: float = 30.0,
        connect_timeout: float = 5.0,
        max_connections: int = 100,
        xfwd: bool = False,
        hooks: Optional[ForwardingHooks] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.route_table = route_table
        self.timeout = timeout
        self.xfwd = xfwd
        self.hooks = hooks or LoggingHooks()
        self._clients: Dict[str, httpx.AsyncClient] = {
            binding.name: httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=connect_timeout),
                limits=httpx.Limits(
                    max_connections=max_connections,
                    max_keepalive_connections=max_connections,
                ),
                follow_redirects=False,
                transport=transport,
            )
            for binding in route_table.bindings
        }

    def client_for(self, binding: RouteBinding) -> httpx.AsyncClient:
        return self._clients[binding.name]

    async def aclose(self):
        for client in self._clients.values():
            await client.aclose()

    def build_context(self, request: Request, resolution: Resolution) -> RequestContext:
        query = request.scope.get("query_string", b"").decode("latin-1")
        target_url = resolution.target + resolution.upstream_path
        if query:
            target_url = f"{target_url}?{query}"
        return RequestContext(
            method=request.method,
            path=request_path(request),
            query=query,
            resolution=resolution,
            target_url=target_url,
        )

    def prepare_headers(
        self, request: Request, resolution: Resolution
    ) -> List[Tuple[str, str]]:
        """
        Copy the inbound headers for the upstream call.

        Hop-by-hop headers are dropped and Host is rewritten to the target's
        authority.
        """
        inbound = [
            (name.decode("latin-1").lower(), value.decode("latin-1"))
            for name, value in request.headers.raw
        ]
        skip = _hop_by_hop(inbound) | {"host"}
        headers = [(name, value) for name, value in inbound if name not in skip]
        headers.append(("host", resolution.binding.authority))

        if self.xfwd:
            client_ip = request.client.host if request.client else "unknown"
            existing_xff = ", ".join(v for n, v in headers if n == "x-forwarded-for")
            headers = [
                (n, v)
                for n, v in headers
                if n
                not in {
                    "x-forwarded-for",
                    "x-forwarded-host",
                    "x-forwarded-proto",
                    "x-forwarded-prefix",
                }
            ]
            headers.append(
                ("x-forwarded-for", f"{existing_xff}, {client_ip}".strip(", "))
            )
            headers.append(("x-forwarded-host", request.headers.get("host", "")))
            headers.append(("x-forwarded-proto", request.url.scheme))
            if resolution.matched_prefix:
                headers.append(("x-forwarded-prefix", resolution.matched_prefix))
        return headers

    @staticmethod
    def _has_body(request: Request) -> bool:
        if "transfer-encoding" in request.headers:
            return True
        return request.headers.get("content-length", "0").strip() not in ("", "0")

    async def forward(self, request: Request, resolution: Resolution) -> Response:
        """
        Forward ``request`` to the resolved target and relay the answer.

        Always returns a response: upstream failures become a 502.
        """
        context = self.build_context(request, resolution)
        client = self.client_for(resolution.binding)
        route = resolution.matched_prefix or "fallback"

        with traced_request(
            tracer, "proxy_request", context.method, context.target_url, route
        ) as span:
            outbound = client.build_request(
                method=context.method,
                url=context.target_url,
                headers=self.prepare_headers(request, resolution),
                content=request.stream() if self._has_body(request) else None,
            )
            await self.hooks.on_request(context, outbound)

            try:
                upstream = await asyncio.wait_for(
                    client.send(outbound, stream=True), timeout=self.timeout
                )
            except (asyncio.TimeoutError, httpx.TransportError) as e:
                error = upstream_error(context.target, e, self.timeout)
                span.set_attribute("proxy.error", error.label)
                await self.hooks.on_error(context, error)
                return bad_gateway_response(resolution.binding, error)

            span.set_attribute("proxy.status_code", upstream.status_code)
            try:
                await self.hooks.on_response(context, upstream)
            except Exception:
                await upstream.aclose()
                raise
            return self._relay(context, upstream)

    def _relay(self, context: RequestContext, upstream: httpx.Response) -> Response:
        response = StreamingResponse(
            self._stream_body(context, upstream), status_code=upstream.status_code
        )
        # Raw pairs keep repeated headers such as Set-Cookie
        raw = [(name.lower(), value) for name, value in upstream.headers.raw]
        skip = _hop_by_hop([(n.decode("latin-1"), v.decode("latin-1")) for n, v in raw])
        if upstream.is_stream_consumed:
            # httpx already decoded the body, so encoding and length no longer apply
            skip |= {"content-encoding", "content-length"}
        for name, value in raw:
            if name.decode("latin-1") not in skip:
                response.raw_headers.append((name, value))
        return response

    async def _stream_body(
        self, context: RequestContext, upstream: httpx.Response
    ) -> AsyncIterator[bytes]:
        """
        Yield the upstream body as received, content encoding untouched.

        A failure after the head was relayed cannot become a 502 any more;
        it is reported and re-raised so the server drops the connection.
        """
        try:
            if upstream.is_stream_consumed:
                yield upstream.content
                return
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            error = upstream_error(context.target, e, self.timeout)
            await self.hooks.on_error(context, error)
            raise error from e
        finally:
            await asyncio.shield(upstream.aclose())
