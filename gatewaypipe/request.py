"""The request entity passed along the proxy pipe."""

from __future__ import annotations

import io
from dataclasses import dataclass, field, replace
from typing import BinaryIO, Optional


@dataclass
class Request:
    """Data to send to a backend."""

    method: str = ""
    url: Optional[str] = None
    query: dict[str, list[str]] = field(default_factory=dict)
    path: str = ""
    body: Optional[BinaryIO] = None
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, list[str]] = field(default_factory=dict)

    def generate_path(self, url_pattern: str) -> None:
        """Set the path by filling the ``{{.Name}}`` placeholders of url_pattern."""
        path = url_pattern
        for key, value in (self.params or {}).items():
            path = path.replace("{{." + key + "}}", value)
        self.path = path

    def clone(self) -> Request:
        """Return a shallow copy sharing query, params, headers and body."""
        return replace(self)


def clone_request_headers(headers: Optional[dict[str, list[str]]]) -> dict[str, list[str]]:
    """Return a copy of headers whose value lists are copied too."""
    return {key: list(values) for key, values in (headers or {}).items()}


def clone_request_params(params: Optional[dict[str, str]]) -> dict[str, str]:
    """Return a copy of params."""
    return dict(params or {})


def clone_request(request: Request) -> Request:
    """Return a deep copy of request that shares no mutable state with it.

    The body of the original is read and replaced by an in-memory copy.
    """
    clone = request.clone()
    clone.headers = clone_request_headers(request.headers)
    clone.params = clone_request_params(request.params)
    if request.body is None:
        return clone
    content = request.body.read()
    request.body.close()
    request.body = io.BytesIO(content)
    clone.body = io.BytesIO(content)
    return clone