"""Middlewares running the registered request and response modifiers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, BinaryIO, Optional

from gatewaypipe.config import Backend, EndpointConfig
from gatewaypipe.modifiers import NAMESPACE, Modifier, get_request_modifier, get_response_modifier
from gatewaypipe.proxy import (
    Metadata,
    Middleware,
    Proxy,
    Response,
    TooManyProxiesError,
    empty_middleware_with_logger,
)
from gatewaypipe.request import Request

_log = logging.getLogger(__name__)


@dataclass
class RequestWrapper:
    """The view of a request handed to request modifiers."""

    method: str = ""
    url: Optional[str] = None
    query: dict[str, list[str]] = field(default_factory=dict)
    path: str = ""
    body: Optional[BinaryIO] = None
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ResponseWrapper:
    """The view of a response handed to response modifiers."""

    request: Any = None
    data: Optional[dict[str, Any]] = None
    is_complete: bool = False
    headers: dict[str, list[str]] = field(default_factory=dict)
    status_code: int = 0
    io: Optional[Any] = None


_REQUEST_FIELDS = tuple(f.name for f in fields(RequestWrapper))
_RESPONSE_FIELDS = ("data", "is_complete", "headers", "status_code", "io")


def _wrap_request(request: Request) -> RequestWrapper:
    return RequestWrapper(**{name: getattr(request, name) for name in _REQUEST_FIELDS})


def _looks_like(value: Any, names: tuple[str, ...]) -> bool:
    return all(hasattr(value, name) for name in names)


def _execute_request_modifiers(modifiers: list[Modifier], request: Request) -> Request:
    current: Any = _wrap_request(request)
    for modifier in modifiers:
        result = modifier(current)
        if _looks_like(result, _REQUEST_FIELDS):
            current = result
    for name in _REQUEST_FIELDS:
        setattr(request, name, getattr(current, name))
    return request


def _execute_response_modifiers(
    modifiers: list[Modifier], response: Response, request: RequestWrapper
) -> Response:
    current: Any = ResponseWrapper(
        request=request,
        data=response.data,
        is_complete=response.is_complete,
        headers=response.metadata.headers,
        status_code=response.metadata.status_code,
        io=response.io,
    )
    for modifier in modifiers:
        result = modifier(current)
        if _looks_like(result, _RESPONSE_FIELDS):
            current = result
    response.data = current.data
    response.is_complete = current.is_complete
    response.io = current.io
    response.metadata = Metadata(headers=current.headers, status_code=current.status_code)
    return response


def _fallback(logger: logging.Logger) -> Middleware:
    return lambda *proxies: empty_middleware_with_logger(logger, *proxies)


def _new_plugin_middleware(
    logger: logging.Logger, tag: str, pattern: str, cfg: dict[str, Any]
) -> Middleware:
    names = cfg.get("name")
    if not isinstance(names, list):
        return _fallback(logger)

    request_modifiers: list[Modifier] = []
    response_modifiers: list[Modifier] = []
    for name in names:
        if not isinstance(name, str):
            continue
        factory = get_request_modifier(name)
        if factory is not None:
            modifier = factory(cfg)
            if modifier is not None:
                request_modifiers.append(modifier)
            continue
        factory = get_response_modifier(name)
        if factory is not None:
            modifier = factory(cfg)
            if modifier is not None:
                response_modifiers.append(modifier)

    if not request_modifiers and not response_modifiers:
        return _fallback(logger)

    logger.debug(
        "[%s: %s][Modifier Plugins] Adding %d request and %d response modifiers",
        tag,
        pattern,
        len(request_modifiers),
        len(response_modifiers),
    )

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) > 1:
            logger.critical(
                "too many proxies for this proxy middleware: newPluginMiddleware only accepts "
                "1 proxy, got %d tag: %s, pattern: %s",
                len(proxies),
                tag,
                pattern,
            )
            raise TooManyProxiesError()
        next_proxy = proxies[0]

        async def proxy(request: Request) -> Optional[Response]:
            if request_modifiers:
                request = _execute_request_modifiers(request_modifiers, request)
            response = await next_proxy(request)
            if not response_modifiers or response is None:
                return response
            return _execute_response_modifiers(response_modifiers, response, _wrap_request(request))

        return proxy

    return middleware


def new_plugin_middleware(logger: Optional[logging.Logger], endpoint: EndpointConfig) -> Middleware:
    """Build the endpoint middleware running the configured modifier plugins."""
    logger = logger or _log
    cfg = endpoint.extra_config.get(NAMESPACE)
    if not isinstance(cfg, dict):
        return _fallback(logger)
    return _new_plugin_middleware(logger, "ENDPOINT", endpoint.endpoint, cfg)


def new_backend_plugin_middleware(logger: Optional[logging.Logger], backend: Backend) -> Middleware:
    """Build the backend middleware running the configured modifier plugins."""
    logger = logger or _log
    cfg = backend.extra_config.get(NAMESPACE)
    if not isinstance(cfg, dict):
        return _fallback(logger)
    pattern = f"{backend.parent_endpoint_method} {backend.parent_endpoint} -> {backend.url_pattern}"
    return _new_plugin_middleware(logger, "BACKEND", pattern, cfg)