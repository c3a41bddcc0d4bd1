"""Endpoint and backend configuration consumed by the proxy pipe."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Optional

DEFAULT_TIMEOUT = 2.0
"""Timeout in seconds used when none is configured."""

Decoder = Callable[[BinaryIO], Optional[dict]]
ExtraConfig = dict


@dataclass
class Backend:
    """Configuration of one backend behind an endpoint. Timeouts are in seconds."""

    url_pattern: str = ""
    method: str = ""
    host: list[str] = field(default_factory=list)
    encoding: str = ""
    decoder: Optional[Decoder] = None
    extra_config: dict[str, Any] = field(default_factory=dict)
    query_strings_to_pass: list[str] = field(default_factory=list)
    headers_to_pass: list[str] = field(default_factory=list)
    parent_endpoint: str = ""
    parent_endpoint_method: str = ""
    timeout: float = 0.0


@dataclass
class EndpointConfig:
    """Configuration of one exposed endpoint. Timeouts are in seconds."""

    endpoint: str = ""
    method: str = ""
    backend: list[Backend] = field(default_factory=list)
    timeout: float = 0.0
    extra_config: dict[str, Any] = field(default_factory=dict)
    query_string: list[str] = field(default_factory=list)
    headers_to_pass: list[str] = field(default_factory=list)