"""Core proxy entities: responses, errors and the basic middlewares.

A proxy is an async callable taking a Request and returning a Response or
None. A proxy reports failure by raising; an exception may carry the partial
result obtained so far in its ``response`` attribute.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, BinaryIO, Callable, Optional

from gatewaypipe.request import Request

NAMESPACE = "gatewaypipe/proxy"
"""Key of the proxy section in extra configuration."""

_log = logging.getLogger(__name__)


@dataclass
class Metadata:
    """Headers and status code of a response."""

    headers: dict[str, list[str]] = field(default_factory=dict)
    status_code: int = 0


@dataclass
class Response:
    """The entity returned by a proxy."""

    data: Optional[dict[str, Any]] = None
    is_complete: bool = False
    metadata: Metadata = field(default_factory=Metadata)
    io: Optional[Any] = None


Proxy = Callable[[Request], Awaitable[Optional[Response]]]
Middleware = Callable[..., Proxy]


class ProxyError(Exception):
    """Base error of the proxy pipe."""

    default_message = "proxy error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class NoBackendsError(ProxyError):
    default_message = "all endpoints must have at least one backend"


class TooManyBackendsError(ProxyError):
    default_message = "too many backends for this proxy"


class TooManyProxiesError(ProxyError):
    default_message = "too many proxies for this proxy middleware"


class NotEnoughProxiesError(ProxyError):
    default_message = "not enough proxies for this endpoint"


class ReadCloserWrapper:
    """A readable stream that closes the wrapped one once *cancelled* is set.

    Must be created while an event loop is running.
    """

    def __init__(self, cancelled: asyncio.Event, stream: BinaryIO) -> None:
        self._stream = stream
        self._watcher = asyncio.get_running_loop().create_task(
            self._close_on_cancel(cancelled)
        )

    async def _close_on_cancel(self, cancelled: asyncio.Event) -> None:
        await cancelled.wait()
        self._stream.close()

    def read(self, size: int = -1) -> bytes:
        return self._stream.read(size)

    def readable(self) -> bool:
        return True

    @property
    def closed(self) -> bool:
        return self._stream.closed

    def close(self) -> None:
        self._watcher.cancel()
        self._stream.close()

    def __enter__(self) -> ReadCloserWrapper:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def new_read_closer_wrapper(cancelled: asyncio.Event, stream: BinaryIO) -> ReadCloserWrapper:
    """Wrap stream so that it gets closed when cancelled is set."""
    return ReadCloserWrapper(cancelled, stream)


def empty_middleware_with_logger(logger: Optional[logging.Logger], *args: Proxy) -> Proxy:
    """Return the single given proxy unchanged."""
    logger = logger or _log
    if len(args) > 1:
        logger.critical(
            "too many proxies for this proxy middleware: EmptyMiddleware only accepts 1 proxy, got %d",
            len(args),
        )
        raise TooManyProxiesError()
    if not args:
        raise NotEnoughProxiesError()
    return args[0]


def empty_middleware(*args: Proxy) -> Proxy:
    """Return the single given proxy unchanged."""
    return empty_middleware_with_logger(_log, *args)


async def noop_proxy(request: Request) -> Optional[Response]:
    """A proxy that only logs the call and returns no response."""
    _log.debug("noop proxy called: %s %s", request.method, request.path)
    return None