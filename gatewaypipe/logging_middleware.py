"""Middleware logging calls to the next proxy."""

from __future__ import annotations

import logging
import time
from typing import Optional

from gatewaypipe.proxy import Middleware, Proxy, Response, TooManyProxiesError
from gatewaypipe.request import Request


def new_logging_middleware(logger: logging.Logger, name: str) -> Middleware:
    """Build a middleware logging the requests and responses of the next proxy."""
    prefix = "[" + name.upper() + "]"

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) > 1:
            logger.critical(
                "too many proxies for this proxy middleware: NewLoggingMiddleware only accepts 1 proxy, got %d",
                len(proxies),
            )
            raise TooManyProxiesError()
        next_proxy = proxies[0]

        async def proxy(request: Request) -> Optional[Response]:
            begin = time.perf_counter()
            logger.info("%s Calling backend", prefix)
            logger.debug("%s Request %r", prefix, request)
            try:
                result = await next_proxy(request)
            except Exception as exc:
                logger.info("%s Call to backend took %s", prefix, _elapsed(begin))
                logger.warning("%s Call to backend failed: %s", prefix, exc)
                raise
            logger.info("%s Call to backend took %s", prefix, _elapsed(begin))
            if result is None:
                logger.warning("%s Call to backend returned a null response", prefix)
            return result

        return proxy

    return middleware


def _elapsed(begin: float) -> str:
    return f"{(time.perf_counter() - begin) * 1000:.3f}ms"