import asyncio
from unittest.mock import Mock

import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SpanExportResult

from mindshare_proxy import server
from mindshare_proxy.config import ProxySettings
from mindshare_proxy.errors import ConfigError
from mindshare_proxy.server import FilteringSpanExporter, create_app, main

TARGET_ENV = [
    "BOT_A_URL",
    "BOT_B_URL",
    "PROXY_TARGETS",
    "PROXY_REQUIRED_TARGETS",
    "PROXY_FALLBACK_TARGET",
    "PORT",
    "HOST",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in TARGET_ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def fake_run(monkeypatch):
    run = Mock()
    monkeypatch.setattr(server.uvicorn, "run", run)
    return run


class TestMain:
    def test_missing_target_exits_without_listening(self, clean_env, fake_run):
        clean_env.setenv("BOT_A_URL", "http://A:1000")

        assert main() == 1
        fake_run.assert_not_called()

    def test_malformed_target_exits_without_listening(self, clean_env, fake_run):
        clean_env.setenv("BOT_A_URL", "http://A:1000")
        clean_env.setenv("BOT_B_URL", "B:2000")

        assert main() == 1
        fake_run.assert_not_called()

    def test_valid_config_starts_server(self, clean_env, fake_run):
        clean_env.setenv("BOT_A_URL", "http://A:1000")
        clean_env.setenv("BOT_B_URL", "http://B:2000")
        clean_env.setenv("PORT", "8123")
        clean_env.setenv("SHUTDOWN_GRACE_PERIOD", "4")

        assert main() == 0

        fake_run.assert_called_once()
        kwargs = fake_run.call_args[1]
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 8123
        assert kwargs["timeout_graceful_shutdown"] == 4.0
        app = fake_run.call_args[0][0]
        assert app.state.engine.route_table.prefixes == ["/network", "/fogochain"]

    def test_create_app_loads_environment(self, clean_env):
        with pytest.raises(ConfigError):
            create_app()


class TestLifecycle:
    def test_shutdown_closes_upstream_clients(self, settings, transport):
        app = create_app(settings, transport=transport)
        clients = list(app.state.engine._clients.values())

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert not any(c.is_closed for c in clients)

        assert all(c.is_closed for c in clients)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_hung_upstream_does_not_block_other_routes(self, route_table):
        async def handler(request):
            if request.url.host == "a":
                await asyncio.sleep(30)
            return httpx.Response(200, stream=httpx.ByteStream(b"fast"))

        settings = ProxySettings(route_table=route_table, timeout=0.5)
        app = create_app(settings, transport=httpx.MockTransport(handler))
        loop = asyncio.get_running_loop()
        started = loop.time()
        finished = {}

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://proxy"
        ) as client:

            async def call(path):
                response = await client.get(path)
                finished[path] = loop.time() - started
                return response

            slow, fast = await asyncio.gather(
                call("/network/slow"), call("/fogochain/fast")
            )

        assert fast.status_code == 200
        assert fast.content == b"fast"
        assert slow.status_code == 502
        assert slow.json()["target"] == "http://a:1000"
        assert "did not respond" in slow.json()["reason"]
        assert finished["/fogochain/fast"] < finished["/network/slow"]
        assert finished["/network/slow"] < 5
        await app.state.engine.aclose()


class TestFilteringSpanExporter:
    def test_drops_response_body_spans(self):
        inner = Mock()
        inner.export.return_value = SpanExportResult.SUCCESS
        body_span = Mock(attributes={"asgi.event.type": "http.response.body"})
        proxy_span = Mock(attributes={"proxy.method": "GET"})

        result = FilteringSpanExporter(inner).export([body_span, proxy_span])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_called_once_with([proxy_span])

    def test_nothing_left_to_export(self):
        inner = Mock()
        body_span = Mock(attributes={"asgi.event.type": "http.response.body"})

        result = FilteringSpanExporter(inner).export([body_span])

        assert result == SpanExportResult.SUCCESS
        inner.export.assert_not_called()

    def test_drops_request_body_spans_from_uploads(self):
        inner = Mock()
        inner.export.return_value = SpanExportResult.SUCCESS
        upload_span = Mock(attributes={"asgi.event.type": "http.request"})
        start_span = Mock(attributes={"asgi.event.type": "http.response.start"})
        bare_span = Mock(attributes=None)

        FilteringSpanExporter(inner).export([upload_span, start_span, bare_span])

        inner.export.assert_called_once_with([start_span, bare_span])

    def test_custom_dropped_events(self):
        inner = Mock()
        body_span = Mock(attributes={"asgi.event.type": "http.response.body"})

        FilteringSpanExporter(inner, dropped_events=set()).export([body_span])

        inner.export.assert_called_once_with([body_span])
