"""Middleware adding static data to the processed responses."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gatewaypipe.config import EndpointConfig
from gatewaypipe.proxy import (
    NAMESPACE,
    Middleware,
    Proxy,
    Response,
    TooManyProxiesError,
    empty_middleware_with_logger,
)
from gatewaypipe.request import Request

_STATIC_KEY = "static"
_ALWAYS = "always"


def _if_success(_response: Optional[Response], error: Optional[BaseException]) -> bool:
    return error is None


def _if_errored(_response: Optional[Response], error: Optional[BaseException]) -> bool:
    return error is not None


def _always(response: Optional[Response], error: Optional[BaseException]) -> bool:
    return _if_success(response, error) or _if_errored(response, error)


def _if_complete(response: Optional[Response], error: Optional[BaseException]) -> bool:
    return error is None and response is not None and response.is_complete


def _if_incomplete(response: Optional[Response], _error: Optional[BaseException]) -> bool:
    return response is None or not response.is_complete


_MATCHERS = {
    _ALWAYS: _always,
    "success": _if_success,
    "errored": _if_errored,
    "complete": _if_complete,
    "incomplete": _if_incomplete,
}


@dataclass
class StaticConfig:
    """Static data to add and the strategy deciding when to add it."""

    data: dict[str, Any]
    strategy: str
    match: Callable[[Optional[Response], Optional[BaseException]], bool]


def static_config_from(extra: dict[str, Any]) -> Optional[StaticConfig]:
    """Read the static configuration from extra config, or None if absent or invalid."""
    section = extra.get(NAMESPACE)
    if not isinstance(section, dict):
        return None
    static = section.get(_STATIC_KEY)
    if not isinstance(static, dict):
        return None
    data = static.get("data")
    if not isinstance(data, dict):
        return None
    strategy = static.get("strategy")
    if not isinstance(strategy, str):
        strategy = _ALWAYS
    return StaticConfig(data=data, strategy=strategy, match=_MATCHERS.get(strategy, _always))


def _with_static_data(response: Optional[Response], data: dict[str, Any]) -> Response:
    if response is None:
        response = Response(data={})
    elif response.data is None:
        response.data = {}
    response.data.update(data)
    return response


def new_static_middleware(logger: Optional[logging.Logger], endpoint: EndpointConfig) -> Middleware:
    """Build a middleware adding the configured static data to responses."""
    logger = logger or logging.getLogger(__name__)
    cfg = static_config_from(endpoint.extra_config)
    if cfg is None:
        return lambda *proxies: empty_middleware_with_logger(logger, *proxies)

    logger.debug(
        "[ENDPOINT: %s][Static] Adding a static response using '%s' strategy. Data: %s",
        endpoint.endpoint,
        cfg.strategy,
        json.dumps(cfg.data, default=str),
    )

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) > 1:
            logger.critical(
                "too many proxies for this proxy middleware: NewStaticMiddleware only accepts 1 proxy, got %d",
                len(proxies),
            )
            raise TooManyProxiesError()
        next_proxy = proxies[0]

        async def proxy(request: Request) -> Optional[Response]:
            try:
                result = await next_proxy(request)
            except Exception as exc:
                partial = getattr(exc, "response", None)
                if cfg.match(partial, exc):
                    exc.response = _with_static_data(partial, cfg.data)
                raise
            if not cfg.match(result, None):
                return result
            return _with_static_data(result, cfg.data)

        return proxy

    return middleware