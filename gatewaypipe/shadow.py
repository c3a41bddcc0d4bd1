"""Shadow proxies: send every request to a second proxy and ignore its outcome."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import re
from typing import Any, Optional, Protocol

from gatewaypipe.config import DEFAULT_TIMEOUT, Backend, EndpointConfig
from gatewaypipe.proxy import (
    NAMESPACE,
    NoBackendsError,
    NotEnoughProxiesError,
    Proxy,
    Response,
    TooManyProxiesError,
)
from gatewaypipe.request import Request, clone_request

_log = logging.getLogger(__name__)

_SHADOW_KEY = "shadow"
_SHADOW_TIMEOUT_KEY = "shadow_timeout"

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_NUMBER = r"(?:\d+\.?\d*|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION = re.compile(rf"(?:{_NUMBER}{_UNIT})+")
_DURATION_PART = re.compile(rf"({_NUMBER})({_UNIT})")

# Shadow calls run in the background; keep references so they are not collected.
_background: set[asyncio.Task] = set()


class ProxyFactory(Protocol):
    """Anything able to build a proxy for an endpoint."""

    def new(self, endpoint: EndpointConfig) -> Proxy: ...


def parse_duration(text: str) -> float:
    """Parse a duration such as ``10s``, ``1h30m`` or ``300ms`` into seconds."""
    sign = 1.0
    body = text
    if body[:1] in ("-", "+"):
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body or not _DURATION.fullmatch(body):
        raise ValueError(f"invalid duration {text!r}")
    total = sum(float(number) * _UNITS[unit] for number, unit in _DURATION_PART.findall(body))
    return sign * total


def is_shadow_backend(backend: Backend) -> Optional[float]:
    """Return the shadow timeout in seconds if backend is a shadow one, else None.

    The ``shadow_timeout`` setting wins over the backend timeout when it parses.
    """
    section = backend.extra_config.get(NAMESPACE)
    if not isinstance(section, dict):
        return None
    if section.get(_SHADOW_KEY) is not True:
        return None
    duration = backend.timeout
    configured = section.get(_SHADOW_TIMEOUT_KEY)
    if isinstance(configured, str):
        with contextlib.suppress(ValueError):
            duration = parse_duration(configured)
    return duration


class ShadowFactory:
    """Wraps a proxy factory so that shadow backends get their own ignored proxy."""

    def __init__(self, factory: Any) -> None:
        self.factory = factory

    def new(self, endpoint: EndpointConfig) -> Proxy:
        """Build the proxy of endpoint, splitting shadow and regular backends."""
        if not endpoint.backend:
            raise NoBackendsError()

        shadow: list[Backend] = []
        regular: list[Backend] = []
        max_timeout = 0.0
        for backend in endpoint.backend:
            timeout = is_shadow_backend(backend)
            if timeout is None:
                regular.append(backend)
                continue
            max_timeout = max(max_timeout, timeout)
            shadow.append(backend)

        primary = self.factory.new(dataclasses.replace(endpoint, backend=regular))
        if not shadow:
            return primary
        shadow_proxy = self.factory.new(dataclasses.replace(endpoint, backend=shadow))
        return shadow_middleware_with_timeout(max_timeout, primary, shadow_proxy)


def new_shadow_factory(factory: Any) -> ShadowFactory:
    """Return a factory adding shadow proxies on top of factory."""
    return ShadowFactory(factory)


def _pick(logger: logging.Logger, where: str, proxies: tuple, build) -> Proxy:
    if not proxies:
        logger.critical(
            "not enough proxies for this endpoint: %s only accepts 1 or 2 proxies, got 0", where
        )
        raise NotEnoughProxiesError()
    if len(proxies) == 1:
        return proxies[0]
    if len(proxies) == 2:
        return build(proxies[0], proxies[1])
    logger.critical(
        "too many proxies for this proxy middleware: %s only accepts 1 or 2 proxies, got %d",
        where,
        len(proxies),
    )
    raise TooManyProxiesError()


def shadow_middleware_with_logger(logger: Optional[logging.Logger], *args: Proxy) -> Proxy:
    """Return the single proxy, or a shadow proxy built from two."""
    return _pick(logger or _log, "ShadowMiddlewareWithLogger", args, new_shadow_proxy)


def shadow_middleware(*args: Proxy) -> Proxy:
    """Return the single proxy, or a shadow proxy built from two."""
    return shadow_middleware_with_logger(_log, *args)


def shadow_middleware_with_timeout_and_logger(
    logger: Optional[logging.Logger], timeout: float, *args: Proxy
) -> Proxy:
    """Like shadow_middleware_with_logger, limiting the shadow call to timeout seconds."""
    return _pick(
        logger or _log,
        "ShadowMiddlewareWithTimeoutAndLogger",
        args,
        lambda primary, shadow: new_shadow_proxy_with_timeout(timeout, primary, shadow),
    )


def shadow_middleware_with_timeout(timeout: float, *args: Proxy) -> Proxy:
    """Like shadow_middleware, limiting the shadow call to timeout seconds."""
    return shadow_middleware_with_timeout_and_logger(_log, timeout, *args)


def new_shadow_proxy(primary: Proxy, shadow: Proxy) -> Proxy:
    """Return a proxy calling both, answering with the primary only."""
    return new_shadow_proxy_with_timeout(DEFAULT_TIMEOUT, primary, shadow)


async def _run_shadow(shadow: Proxy, request: Request, timeout: float) -> None:
    with contextlib.suppress(Exception):
        await asyncio.wait_for(shadow(request), timeout)


def new_shadow_proxy_with_timeout(timeout: float, primary: Proxy, shadow: Proxy) -> Proxy:
    """Return a proxy calling both, answering with the primary only.

    The shadow call gets a deep copy of the request, runs in the background,
    is cut after timeout seconds and never affects the result.
    """

    async def proxy(request: Request) -> Optional[Response]:
        shadow_request = clone_request(request)
        task = asyncio.ensure_future(_run_shadow(shadow, shadow_request, timeout))
        _background.add(task)
        task.add_done_callback(_background.discard)
        return await primary(request)

    return proxy