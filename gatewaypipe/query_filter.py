"""Middleware passing only the configured query strings to a backend."""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from gatewaypipe.config import Backend
from gatewaypipe.proxy import (
    Middleware,
    Proxy,
    Response,
    TooManyProxiesError,
    empty_middleware_with_logger,
)
from gatewaypipe.request import Request


def new_filter_query_strings_middleware(logger: Optional[logging.Logger], backend: Backend) -> Middleware:
    """Build a middleware dropping query strings not listed in the backend config."""
    logger = logger or logging.getLogger(__name__)
    allowed = backend.query_strings_to_pass
    if not allowed:
        return lambda *proxies: empty_middleware_with_logger(logger, *proxies)

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) > 1:
            logger.critical(
                "too many proxies for this %s %s -> %s proxy middleware: "
                "NewFilterQueryStringsMiddleware only accepts 1 proxy, got %d",
                backend.parent_endpoint_method,
                backend.parent_endpoint,
                backend.url_pattern,
                len(proxies),
            )
            raise TooManyProxiesError()
        next_proxy = proxies[0]

        async def proxy(request: Request) -> Optional[Response]:
            if not request.query:
                return await next_proxy(request)
            passing = sum(1 for name in allowed if name in request.query)
            if passing == len(request.query):
                return await next_proxy(request)
            # The value lists are shared, not copied.
            filtered = {name: request.query[name] for name in allowed if name in request.query}
            return await next_proxy(dataclasses.replace(request, query=filtered))

        return proxy

    return middleware