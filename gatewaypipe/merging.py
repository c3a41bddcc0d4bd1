"""Middleware merging the responses of several backends into one.

Backends are called either in parallel or, when configured, one after
another; in the sequential mode values of earlier responses can be injected
as params of later requests.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import struct
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from gatewaypipe.config import EndpointConfig
from gatewaypipe.proxy import (
    NAMESPACE,
    Middleware,
    NoBackendsError,
    NotEnoughProxiesError,
    Proxy,
    ProxyError,
    Response,
    empty_middleware_with_logger,
)
from gatewaypipe.register import Untyped
from gatewaypipe.request import Request, clone_request

ResponseCombiner = Callable[[int, list], Response]

_log = logging.getLogger(__name__)

_MERGE_KEY = "combiner"
_SEQUENTIAL_KEY = "sequential"
_PROPAGATE_KEY = "sequential_propagated_params"
_DEFAULT_COMBINER = "default"
_DEADLINE_MESSAGE = "context deadline exceeded"

_URL_PATTERN_RE = re.compile(r"\{\{\.Resp(\d+)_([\w\-.]+)\}\}")
_PROPAGATED_RE = re.compile(r"[Rr]esp(\d+)_?([\w\-.]+)?")


class NullResultError(ProxyError):
    """A backend returned no response."""

    default_message = "null result"


class MergeError(ProxyError):
    """One or more backends failed while merging; holds every error."""

    def __init__(self, errors: Sequence[BaseException], response: Optional[Response] = None) -> None:
        self.errors = list(errors)
        self.response = response
        super().__init__("\n".join(str(error) for error in self.errors))


class PartialResponseError(MergeError):
    """Some backends failed but a partial response was still merged."""

    def __init__(self, errors: Sequence[BaseException], response: Response) -> None:
        super().__init__(errors, response)


class IncrementalMergeAccumulator:
    """Collects backend responses and errors one by one into a single response."""

    def __init__(self, total: int, combiner: ResponseCombiner) -> None:
        self.pending = total
        self.data: Optional[Response] = None
        self.combiner = combiner
        self.errors: list[BaseException] = []

    def merge(self, response: Optional[Response], error: Optional[BaseException]) -> None:
        """Account for the outcome of one backend."""
        self.pending -= 1
        if error is not None:
            self.errors.append(error)
            if self.data is not None:
                self.data.is_complete = False
            return
        if response is None:
            self.errors.append(NullResultError())
            return
        if self.data is None:
            self.data = response
            return
        self.data = self.combiner(2, [self.data, response])

    def result(self) -> Optional[Response]:
        """Return the merged response.

        Raises MergeError when nothing could be merged, and
        PartialResponseError, carrying the partial response, when some
        backends failed.
        """
        if self.data is None:
            if self.errors:
                raise MergeError(self.errors)
            return None
        if self.pending != 0 or self.errors:
            self.data.is_complete = False
        if self.errors:
            raise PartialResponseError(self.errors, self.data)
        return self.data


def combine_data(total: int, parts: Sequence[Optional[Response]]) -> Response:
    """Merge the data of all parts; later parts override earlier keys."""
    is_complete = len(parts) == total
    merged: Optional[Response] = None
    for part in parts:
        if part is None or part.data is None:
            is_complete = False
            continue
        is_complete = is_complete and part.is_complete
        if merged is None:
            merged = Response(data=part.data, is_complete=is_complete)
            continue
        merged.data.update(part.data)

    if merged is None:
        return Response(data={}, is_complete=is_complete)
    merged.is_complete = is_complete
    return merged


class CombinerRegister:
    """Named response combiners with a fallback for unknown or invalid entries."""

    def __init__(self, combiners: dict[str, ResponseCombiner], fallback: ResponseCombiner) -> None:
        self._data = Untyped()
        for name, combiner in combiners.items():
            self._data.register(name, combiner)
        self._fallback = fallback

    def get_response_combiner(self, name: str) -> ResponseCombiner:
        """Return the combiner registered as name, or the fallback."""
        try:
            found = self._data.get(name)
        except KeyError:
            return self._fallback
        return found if callable(found) else self._fallback

    def set_response_combiner(self, name: str, combiner: ResponseCombiner) -> None:
        """Register combiner under name."""
        self._data.register(name, combiner)

    def __contains__(self, name: object) -> bool:
        return name in self._data

    def __len__(self) -> int:
        return len(self._data.clone())


_response_combiners = CombinerRegister({_DEFAULT_COMBINER: combine_data}, combine_data)


def new_register() -> CombinerRegister:
    """Return the shared register of response combiners."""
    return _response_combiners


def register_response_combiner(name: str, combiner: ResponseCombiner) -> None:
    """Add a response combiner to the shared register."""
    _response_combiners.set_response_combiner(name, combiner)


def _combiner_name(extra: dict[str, Any]) -> str:
    section = extra.get(NAMESPACE)
    if isinstance(section, dict) and _MERGE_KEY in section:
        name = section[_MERGE_KEY]
        if not isinstance(name, str):
            raise TypeError(f"combiner name must be a string, got {name!r}")
        if name in _response_combiners:
            return name
    return _DEFAULT_COMBINER


def _sequential_config(endpoint: EndpointConfig) -> tuple[bool, list[str]]:
    section = endpoint.extra_config.get(NAMESPACE)
    if not isinstance(section, dict):
        return False, []
    enabled = section.get(_SEQUENTIAL_KEY) is True
    propagated: list[str] = []
    params = section.get(_PROPAGATE_KEY)
    if isinstance(params, list):
        for param in params:
            if not isinstance(param, str):
                raise TypeError(f"propagated param must be a string, got {param!r}")
            propagated.append(param)
    return enabled, propagated


def _has_unsafe_backends(endpoint: EndpointConfig) -> bool:
    if len(endpoint.backend) == 1:
        return False
    return any(b.method.upper() not in ("GET", "HEAD") for b in endpoint.backend)


@dataclass(frozen=True)
class _Replacement:
    backend_index: int
    destination: str
    source: tuple[str, ...]
    full_response: bool


def _replacement(index_text: str, tail: Optional[str]) -> _Replacement:
    tail = tail or ""
    destination = "Resp" + index_text + ("_" + tail if tail else "")
    return _Replacement(int(index_text), destination, tuple(tail.split(".")), tail == "")


def _plan_replacements(endpoint: EndpointConfig, propagated: list[str]) -> list[list[_Replacement]]:
    total = len(endpoint.backend)
    plan = []
    for i, backend in enumerate(endpoint.backend):
        replacements = [
            _replacement(m.group(1), m.group(2)) for m in _URL_PATTERN_RE.finditer(backend.url_pattern)
        ]
        if i > 0:
            for param in propagated:
                for m in _PROPAGATED_RE.finditer(param):
                    if int(m.group(1)) >= total:
                        continue
                    replacements.append(_replacement(m.group(1), m.group(2)))
        plan.append(replacements)
    return plan


def _to_float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _format_float32_exponent(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    try:
        single = _to_float32(value)
    except OverflowError:
        single = math.copysign(math.inf, value)
    if math.isinf(single):
        return "+Inf" if single > 0 else "-Inf"
    text = f"{single:.8E}"
    for precision in range(0, 9):
        candidate = f"{single:.{precision}E}"
        try:
            if _to_float32(float(candidate)) == single:
                return candidate
        except OverflowError:
            continue
    return text


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def _format_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda item: str(item[0]))
        return "map[" + " ".join(f"{k}:{_format_value(v)}" for k, v in items) + "]"
    return str(value)


def _format_param(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(_format_value(item) for item in value)
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float32_exponent(value)
    return _format_value(value)


def _apply_replacements(
    request: Request,
    replacements: list[_Replacement],
    parts: list[Optional[Response]],
    current: int,
    registry: dict[str, str],
) -> None:
    for rep in replacements:
        if rep.backend_index >= current or parts[rep.backend_index] is None:
            continue
        part = parts[rep.backend_index]
        data = part.data or {}
        for key in rep.source[:-1]:
            nested = data.get(key)
            if not isinstance(nested, dict):
                break
            data = nested

        found = registry.get(rep.destination)
        if found:
            request.params[rep.destination] = found
            continue

        if rep.full_response:
            if part.io is None:
                continue
            try:
                content = part.io.read()
            except (OSError, ValueError):
                continue
            text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else str(content)
            request.params[rep.destination] = text
            registry[rep.destination] = text
            continue

        key = rep.source[-1]
        if key not in data:
            continue
        param = _format_param(data[key])
        request.params[rep.destination] = param
        registry[rep.destination] = param


def _deadline(timeout: Optional[float]) -> Optional[float]:
    if timeout is None:
        return None
    return asyncio.get_running_loop().time() + timeout


async def _call(proxy: Proxy, request: Request, deadline: Optional[float]) -> Response:
    if deadline is None:
        result = await proxy(request)
    else:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TimeoutError(_DEADLINE_MESSAGE)
        try:
            result = await asyncio.wait_for(proxy(request), remaining)
        except asyncio.TimeoutError as exc:
            raise TimeoutError(_DEADLINE_MESSAGE) from exc
    if result is None:
        raise NullResultError()
    return result


def _parallel_merge(
    cloner: Callable[[Request], Request],
    timeout: Optional[float],
    combiner: ResponseCombiner,
    proxies: Sequence[Proxy],
) -> Proxy:
    async def proxy(request: Request) -> Optional[Response]:
        deadline = _deadline(timeout)
        tasks = [asyncio.ensure_future(_call(p, cloner(request), deadline)) for p in proxies]
        order = {task: index for index, task in enumerate(tasks)}
        acc = IncrementalMergeAccumulator(len(proxies), combiner)
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=order.__getitem__):
                    if task.cancelled():
                        acc.merge(None, TimeoutError(_DEADLINE_MESSAGE))
                        continue
                    error = task.exception()
                    if error is not None:
                        acc.merge(None, error)
                    else:
                        acc.merge(task.result(), None)
        finally:
            for task in pending:
                task.cancel()
        return acc.result()

    return proxy


def _sequential_merge(
    cloner: Callable[[Request], Request],
    replacements: list[list[_Replacement]],
    timeout: Optional[float],
    combiner: ResponseCombiner,
    proxies: Sequence[Proxy],
) -> Proxy:
    async def proxy(request: Request) -> Optional[Response]:
        deadline = _deadline(timeout)
        if request.params is None:
            request.params = {}
        parts: list[Optional[Response]] = [None] * len(proxies)
        registry: dict[str, str] = {}
        acc = IncrementalMergeAccumulator(len(proxies), combiner)
        for i, next_proxy in enumerate(proxies):
            if i > 0:
                _apply_replacements(request, replacements[i], parts, i, registry)
            try:
                response = await _call(next_proxy, cloner(request), deadline)
            except Exception as exc:
                if i == 0:
                    raise
                acc.merge(None, exc)
                break
            acc.merge(response, None)
            if not response.is_complete:
                break
            parts[i] = response
        return acc.result()

    return proxy


def new_merge_data_middleware(logger: Optional[logging.Logger], endpoint: EndpointConfig) -> Middleware:
    """Build a middleware calling every backend of endpoint and merging the responses."""
    logger = logger or _log
    total = len(endpoint.backend)
    if total == 0:
        logger.critical("all endpoints must have at least one backend: NewMergeDataMiddleware")
        raise NoBackendsError()
    if total == 1:
        return lambda *proxies: empty_middleware_with_logger(logger, *proxies)

    timeout = 0.85 * endpoint.timeout if endpoint.timeout > 0 else None
    name = _combiner_name(endpoint.extra_config)
    combiner = _response_combiners.get_response_combiner(name)
    sequential, propagated = _sequential_config(endpoint)

    logger.debug(
        "[ENDPOINT: %s][Merge] Backends: %d, sequential: %s, combiner: %s",
        endpoint.endpoint,
        total,
        "true" if sequential else "false",
        name,
    )

    def middleware(*proxies: Proxy) -> Proxy:
        if len(proxies) != total:
            logger.critical("not enough proxies for this endpoint: NewMergeDataMiddleware")
            raise NotEnoughProxiesError()
        cloner = clone_request if _has_unsafe_backends(endpoint) else Request.clone
        if not sequential:
            return _parallel_merge(cloner, timeout, combiner, proxies)
        replacements = _plan_replacements(endpoint, propagated)
        return _sequential_merge(cloner, replacements, timeout, combiner, proxies)

    return middleware