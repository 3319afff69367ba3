class ProxyError(Exception):
    """Base class for every error raised by the proxy."""


class ConfigError(ProxyError):
    """Raised when the proxy configuration is missing or malformed.

    This is the only fatal error: it is raised before the server binds its
    listening socket and the entry point exits with a non-zero status.
    """


class NoRouteMatch(ProxyError):
    """Raised when a path has no binding and no fallback exists."""

    def __init__(self, path: str):
        super().__init__(f"No route matches {path}")
        self.path = path


class UpstreamError(ProxyError):
    """An upstream call failed; always recovered into a 502 response."""

    label = "upstream_error"

    def __init__(self, target: str, reason: str):
        super().__init__(f"{reason} ({target})")
        self.target = target
        self.reason = reason or self.label


class UpstreamUnreachable(UpstreamError):
    label = "connection_failed"


class UpstreamTimeout(UpstreamError):
    label = "timeout"


class UpstreamProtocolError(UpstreamError):
    label = "protocol_error"
