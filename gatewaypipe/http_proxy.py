"""Proxies sending requests to HTTP backends and parsing their responses.

An executor is an async callable sending a BackendRequest and returning a
BackendResponse. A status handler checks a BackendResponse, returning it (or
a replacement) or raising. A parser turns a BackendResponse into a Response.
"""

from __future__ import annotations

import contextlib
import gzip
import io
import json
import logging
import re
import string
from dataclasses import dataclass, field
from typing import Any, Awaitable, BinaryIO, Callable, Optional

from gatewaypipe.config import Backend, Decoder
from gatewaypipe.proxy import (
    Metadata,
    Middleware,
    NotEnoughProxiesError,
    Proxy,
    Response,
    TooManyProxiesError,
)
from gatewaypipe.request import Request, clone_request_headers

_log = logging.getLogger(__name__)

_TOKEN_CHARS = frozenset("!#$%&'*+-.^_`|~" + string.ascii_letters + string.digits)
_INTEGER = re.compile(r"[+-]?\d+")


@dataclass
class BackendRequest:
    """A request as handed to the executor."""

    method: str = "GET"
    url: str = ""
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: Optional[BinaryIO] = None
    content_length: Optional[int] = None


@dataclass
class BackendResponse:
    """A response as returned by the executor."""

    status_code: int = 200
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: BinaryIO = field(default_factory=io.BytesIO)

    def header(self, name: str) -> str:
        """Return the first value of header name, matched case-insensitively, or ''."""
        wanted = name.lower()
        for key, values in self.headers.items():
            if key.lower() == wanted and values:
                return values[0]
        return ""


Executor = Callable[[BackendRequest], Awaitable[BackendResponse]]
StatusHandler = Callable[[BackendResponse], BackendResponse]
HTTPResponseParser = Callable[[BackendResponse], Response]


def _nop_decoder(_stream: BinaryIO) -> dict[str, Any]:
    return {}


def _identity(response: Response) -> Response:
    return response


@dataclass
class HTTPResponseParserConfig:
    """The decoder and the entity formatter used by the default parser."""

    decoder: Decoder = _nop_decoder
    entity_formatter: Callable[[Response], Response] = _identity


def default_http_response_parser_factory(config: HTTPResponseParserConfig) -> HTTPResponseParser:
    """Return a parser decoding the (possibly gzipped) body into the response data."""

    def parse(response: BackendResponse) -> Response:
        with contextlib.ExitStack() as stack:
            body = response.body if response.body is not None else io.BytesIO()
            stack.callback(body.close)
            reader: BinaryIO = body
            if response.header("Content-Encoding") == "gzip":
                reader = stack.enter_context(gzip.GzipFile(fileobj=body, mode="rb"))
            data = config.decoder(reader)
        return config.entity_formatter(Response(data=data, is_complete=True))

    return parse


def noop_http_response_parser(response: BackendResponse) -> Response:
    """Return a response exposing the untouched backend body as its stream."""
    return Response(
        data={},
        is_complete=True,
        io=response.body,
        metadata=Metadata(headers=response.headers, status_code=response.status_code),
    )


def _valid_method(method: str) -> str:
    if not method:
        return "GET"
    if not all(char in _TOKEN_CHARS for char in method):
        raise ValueError(f"invalid method {json.dumps(method)}")
    return method


def _content_length(request: Request) -> Optional[int]:
    if request.body is None:
        return None
    values = (request.headers or {}).get("Content-Length")
    if values and len(values) == 1 and values[0] != "chunked" and _INTEGER.fullmatch(values[0]):
        return int(values[0])
    return None


def _is_response_error(error: BaseException) -> bool:
    return isinstance(getattr(error, "name", None), str) and isinstance(
        getattr(error, "status_code", None), int
    )


def new_http_proxy_detailed(
    backend: Optional[Backend],
    executor: Executor,
    status_handler: StatusHandler,
    parser: HTTPResponseParser,
) -> Proxy:
    """Build a proxy sending requests through executor.

    An error raised by status_handler that carries a string ``name`` and an
    int ``status_code`` becomes a response holding it under
    ``error_<name>``; other errors propagate.
    """

    async def proxy(request: Request) -> Optional[Response]:
        backend_request = BackendRequest(
            method=_valid_method(request.method.upper()),
            url=request.url or "",
            headers=clone_request_headers(request.headers),
            body=request.body,
            content_length=_content_length(request),
        )
        try:
            response = await executor(backend_request)
        finally:
            if backend_request.body is not None:
                backend_request.body.close()

        try:
            response = status_handler(response)
        except Exception as exc:
            if _is_response_error(exc):
                return Response(
                    data={f"error_{exc.name}": exc},
                    metadata=Metadata(status_code=exc.status_code),
                )
            raise
        return parser(response)

    return proxy


def new_request_builder_middleware_with_logger(
    logger: Optional[logging.Logger], backend: Backend
) -> Middleware:
    """Build a middleware setting the backend path and method on each request."""
    logger = logger or _log

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) > 1:
            logger.critical(
                "too many proxies for this %s %s -> %s proxy middleware: "
                "newRequestBuilderMiddleware only accepts 1 proxy, got %d",
                backend.parent_endpoint_method,
                backend.parent_endpoint,
                backend.url_pattern,
                len(proxies),
            )
            raise TooManyProxiesError()
        if not proxies:
            raise NotEnoughProxiesError()
        next_proxy = proxies[0]

        async def proxy(request: Request) -> Optional[Response]:
            request.generate_path(backend.url_pattern)
            request.method = backend.method
            return await next_proxy(request)

        return proxy

    return middleware


def new_request_builder_middleware(backend: Backend) -> Middleware:
    """Build a middleware setting the backend path and method on each request."""
    return new_request_builder_middleware_with_logger(_log, backend)