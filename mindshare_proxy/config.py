import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from mindshare_proxy.errors import ConfigError
from mindshare_proxy.routing.route_table import RESERVED_PATHS, RouteTable
from mindshare_proxy.vars import DEFAULT_TARGET_ENV

METRICS_PATH = "/metrics"


@dataclass(frozen=True)
class ProxySettings:
    """Everything the proxy needs at runtime, validated once before serving."""

    route_table: RouteTable
    host: str = "0.0.0.0"
    port: int = 3000
    timeout: float = 30.0
    connect_timeout: float = 5.0
    max_connections: int = 100
    xfwd: bool = False
    metrics_enabled: bool = True
    shutdown_grace_period: float = 10.0


def _parse_targets(raw: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ConfigError(f"PROXY_TARGETS entry '{entry}' is not name=url")
        name, url = entry.split("=", 1)
        name = name.strip()
        if not name:
            raise ConfigError(f"PROXY_TARGETS entry '{entry}' has no name")
        if name in mapping:
            raise ConfigError(f"PROXY_TARGETS lists '{name}' twice")
        mapping[name] = url.strip()
    return mapping


def _parse_list(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None or not raw.strip():
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def _number(environ: Mapping[str, str], key: str, default, cast=float):
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got '{raw}'") from e
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got '{raw}'")
    return value


def _flag(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_target_config(environ: Mapping[str, str]) -> Dict[str, Optional[str]]:
    """Return ``{name: url}`` from PROXY_TARGETS, or from the default bot variables."""
    targets = _parse_targets(environ.get("PROXY_TARGETS", ""))
    if targets:
        return targets
    return {name: environ.get(env) for name, env in DEFAULT_TARGET_ENV.items()}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ProxySettings:
    """
    Build the immutable proxy settings from environment variables.

    Raises ConfigError when any required target is missing or malformed or a
    numeric setting cannot be parsed; nothing is bound before this succeeds.
    """
    if environ is None:
        environ = os.environ

    metrics_enabled = _flag(environ, "PROXY_METRICS_ENABLED", True)
    reserved = set(RESERVED_PATHS)
    if metrics_enabled:
        reserved.add(METRICS_PATH)

    targets = load_target_config(environ)
    required = _parse_list(environ.get("PROXY_REQUIRED_TARGETS"))
    if required is not None:
        unknown = [name for name in required if name not in targets]
        if unknown:
            raise ConfigError(
                "PROXY_REQUIRED_TARGETS names unknown target(s): " + ", ".join(unknown)
            )
    fallback = (environ.get("PROXY_FALLBACK_TARGET") or "").strip() or None

    route_table = RouteTable.build(
        targets, required=required, fallback=fallback, reserved=reserved
    )
    if not route_table.bindings:
        raise ConfigError("No proxy targets are configured")

    return ProxySettings(
        route_table=route_table,
        host=environ.get("HOST") or "0.0.0.0",
        port=_number(environ, "PORT", 3000, int),
        timeout=_number(environ, "PROXY_TIMEOUT", 30.0),
        connect_timeout=_number(environ, "PROXY_CONNECT_TIMEOUT", 5.0),
        max_connections=_number(environ, "PROXY_MAX_CONNECTIONS", 100, int),
        xfwd=_flag(environ, "PROXY_XFWD", False),
        metrics_enabled=metrics_enabled,
        shutdown_grace_period=_number(environ, "SHUTDOWN_GRACE_PERIOD", 10.0),
    )
