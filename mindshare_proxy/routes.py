import html
import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from mindshare_proxy.errors import NoRouteMatch
from mindshare_proxy.forwarding.engine import ForwardingEngine, request_path
from mindshare_proxy.routing.route_table import RouteTable
from mindshare_proxy.vars import TARGET_TITLES

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def get_engine(request: Request) -> ForwardingEngine:
    return request.app.state.engine


def get_route_table(request: Request) -> RouteTable:
    return request.app.state.engine.route_table


def render_landing_page(route_table: RouteTable) -> str:
    """Static landing page listing the registered endpoints."""
    entries = [
        (TARGET_TITLES.get(b.name, f"{b.name.title()} Dashboard"), b.prefix)
        for b in route_table.bindings
    ]
    entries.append(("Health Check", "/health"))
    endpoints = "\n".join(
        f"""        <div class="endpoint">
          <strong>{html.escape(title)}:</strong><br>
          <a href="{html.escape(path)}">{html.escape(path)}</a>
        </div>"""
        for title, path in entries
    )
    return f"""<html>
      <head>
        <title>Mindshare Proxy</title>
        <style>
          body {{ font-family: system-ui; max-width: 600px; margin: 50px auto; padding: 20px; }}
          h1 {{ color: #333; }}
          .endpoint {{ background: #f5f5f5; padding: 15px; margin: 10px 0; border-radius: 8px; }}
          a {{ color: #0066cc; text-decoration: none; }}
          a:hover {{ text-decoration: underline; }}
        </style>
      </head>
      <body>
        <h1>Mindshare Proxy Service</h1>
        <p>Available endpoints:</p>
{endpoints}
      </body>
    </html>
"""


def not_found_response(route_table: RouteTable) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "Endpoint not found",
            "availableEndpoints": route_table.prefixes,
        },
    )


@router.get("/health")
async def health(route_table: RouteTable = Depends(get_route_table)):
    return {
        "status": "ok",
        "message": "Mindshare Proxy is running",
        "routes": route_table.routes,
        "fallback": route_table.fallback.prefix if route_table.fallback else None,
        "timestamp": int(time.time() * 1000),
    }


@router.get("/", response_class=HTMLResponse)
async def landing_page(request: Request):
    return HTMLResponse(request.app.state.landing_page)


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(
    request: Request, path: str, engine: ForwardingEngine = Depends(get_engine)
) -> Response:
    """Catch-all route that proxies every non-reserved path."""
    inbound_path = request_path(request)
    route_table = engine.route_table

    if route_table.is_reserved(inbound_path):
        return JSONResponse(
            status_code=405,
            content={
                "error": "Method Not Allowed",
                "message": f"{request.method} is not supported on {inbound_path}",
            },
        )

    try:
        resolution = route_table.resolve(inbound_path)
    except NoRouteMatch:
        logger.info(f"No route for {request.method} {inbound_path}")
        return not_found_response(route_table)

    return await engine.forward(request, resolution)
