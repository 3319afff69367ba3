"""
Static path-prefix routing table.

The table is built once at startup from a mapping of logical backend name to
target base URL and never changes afterwards, so it can be shared by every
request without locking.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from mindshare_proxy.errors import ConfigError, NoRouteMatch

logger = logging.getLogger("uvicorn.error")

RESERVED_PATHS = frozenset({"/", "/health"})
ALLOWED_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class RouteBinding:
    name: str
    prefix: str
    target: str

    @property
    def authority(self) -> str:
        """Host (and port) of the target, used as the outbound Host header."""
        return urlsplit(self.target).netloc

    @property
    def depth(self) -> int:
        return len([segment for segment in self.prefix.split("/") if segment])

    def matches(self, path: str) -> bool:
        return path == self.prefix or path.startswith(self.prefix + "/")


@dataclass(frozen=True)
class Resolution:
    """Result of resolving an inbound path against the table."""

    binding: RouteBinding
    upstream_path: str
    fallback: bool = False

    @property
    def target(self) -> str:
        return self.binding.target

    @property
    def matched_prefix(self) -> Optional[str]:
        return None if self.fallback else self.binding.prefix


def normalize_prefix(name: str) -> str:
    return "/" + name.strip().strip("/")


def validate_target_url(name: str, url: Optional[str]) -> str:
    """Check that ``url`` is an http(s) base URL and return it without a trailing slash."""
    if not url or not url.strip():
        raise ConfigError(f"Target URL for '{name}' is not set")
    url = url.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Target URL for '{name}' is malformed: {url} ({e})") from e
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ConfigError(
            f"Target URL for '{name}' must use http or https, got: {url}"
        )
    if not parts.hostname:
        raise ConfigError(f"Target URL for '{name}' has no host: {url}")
    if "@" in parts.netloc:
        raise ConfigError(f"Target URL for '{name}' must not carry credentials")
    if port == 0:
        raise ConfigError(f"Target URL for '{name}' has an invalid port: {url}")
    if parts.query or parts.fragment:
        raise ConfigError(
            f"Target URL for '{name}' must not carry a query or fragment: {url}"
        )
    return url.rstrip("/")


@dataclass(frozen=True)
class RouteTable:
    bindings: Tuple[RouteBinding, ...]
    fallback: Optional[RouteBinding] = None
    reserved: frozenset = RESERVED_PATHS
    # Bindings ordered most specific first; derived from ``bindings``
    _match_order: Tuple[RouteBinding, ...] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        order = sorted(
            enumerate(self.bindings), key=lambda item: (-item[1].depth, item[0])
        )
        object.__setattr__(self, "_match_order", tuple(b for _, b in order))

    @classmethod
    def build(
        cls,
        config: Mapping[str, Optional[str]],
        required: Optional[Iterable[str]] = None,
        fallback: Optional[str] = None,
        reserved: Iterable[str] = RESERVED_PATHS,
    ) -> "RouteTable":
        """
        Build a table from ``{name: target_url}``.

        Every name is bound to the prefix ``/<name>``. Raises ConfigError when a
        required target is missing, a URL is malformed, two names map to the
        same prefix, a prefix shadows a reserved path or the fallback name is
        unknown.
        """
        reserved = frozenset(reserved)
        required = list(config.keys()) if required is None else list(required)

        missing = [name for name in required if not (config.get(name) or "").strip()]
        if missing:
            raise ConfigError(
                "Required target URL(s) not set: " + ", ".join(sorted(missing))
            )

        bindings = []
        seen: Dict[str, str] = {}
        for name, url in config.items():
            if not name or not name.strip("/ "):
                raise ConfigError("Route names must not be empty")
            if not (url or "").strip():
                # Optional target left unset
                logger.warning(f"Target '{name}' is not configured, skipping route")
                continue
            prefix = normalize_prefix(name)
            if prefix in reserved:
                raise ConfigError(f"Prefix {prefix} is reserved by the proxy")
            if prefix in seen:
                raise ConfigError(
                    f"Targets '{seen[prefix]}' and '{name}' both map to {prefix}"
                )
            seen[prefix] = name
            bindings.append(
                RouteBinding(
                    name=name.strip(), prefix=prefix, target=validate_target_url(name, url)
                )
            )

        fallback_binding = None
        if fallback:
            fallback_binding = next(
                (b for b in bindings if b.name == fallback.strip()), None
            )
            if fallback_binding is None:
                raise ConfigError(
                    f"Fallback target '{fallback}' is not a configured target"
                )

        return cls(
            bindings=tuple(bindings), fallback=fallback_binding, reserved=reserved
        )

    @property
    def prefixes(self) -> list:
        return [binding.prefix for binding in self.bindings]

    @property
    def routes(self) -> Dict[str, str]:
        return {binding.prefix: binding.target for binding in self.bindings}

    def is_reserved(self, path: str) -> bool:
        return (path or "/") in self.reserved

    def resolve(self, path: str) -> Resolution:
        """
        Resolve ``path`` to a binding.

        The longest registered prefix matching on whole path segments wins and
        is stripped from the upstream path. Otherwise the fallback binding is
        used with the path unchanged. Raises NoRouteMatch for reserved paths
        and when nothing applies.
        """
        path = path or "/"
        if self.is_reserved(path):
            raise NoRouteMatch(path)

        for binding in self._match_order:
            if binding.matches(path):
                return Resolution(
                    binding=binding, upstream_path=path[len(binding.prefix):] or "/"
                )

        if self.fallback is not None:
            return Resolution(binding=self.fallback, upstream_path=path, fallback=True)

        raise NoRouteMatch(path)
