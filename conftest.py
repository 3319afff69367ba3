# Ensure tests import the proxy package from this checkout first.
import inspect
import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from mindshare_proxy.config import ProxySettings  # noqa: E402
from mindshare_proxy.routing.route_table import RouteTable  # noqa: E402

NETWORK_URL = "http://a:1000"
FOGOCHAIN_URL = "http://b:2000"


def streamed(response: httpx.Response) -> httpx.Response:
    """
    Return ``response`` with an unread body, as a network transport would.

    ``httpx.Response(content=...)`` and ``json=...`` read their body on
    construction, which a real upstream never does.
    """
    if not response.is_stream_consumed:
        return response
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=httpx.ByteStream(response.content),
    )


class FakeUpstream:
    """
    Request handler for httpx.MockTransport standing in for the backends.

    Records every outbound request and answers with a JSON echo unless a
    handler was registered for the request's host.
    """

    def __init__(self):
        self.requests = []
        self.handlers = {}

    def on(self, host, handler):
        self.handlers[host] = handler

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            echo = {
                "host": request.headers.get("host"),
                "url": str(request.url),
                "method": request.method,
                "body": request.content.decode("utf-8", "replace"),
            }
            return streamed(httpx.Response(200, json=echo))
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return streamed(result)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def route_table():
    return RouteTable.build({"network": NETWORK_URL, "fogochain": FOGOCHAIN_URL})


@pytest.fixture
def settings(route_table):
    return ProxySettings(route_table=route_table, timeout=1.0, connect_timeout=0.5)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def transport(upstream):
    return httpx.MockTransport(upstream)


@pytest.fixture
def make_client(transport):
    """Build a TestClient around a proxy app for the given settings."""
    from mindshare_proxy.server import create_app

    clients = []

    def _make(settings, **kwargs):
        kwargs.setdefault("transport", transport)
        client = TestClient(create_app(settings, **kwargs))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, settings):
    return make_client(settings)
