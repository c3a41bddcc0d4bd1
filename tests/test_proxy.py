import asyncio
import io

import pytest

from gatewaypipe.proxy import (
    NoBackendsError,
    NotEnoughProxiesError,
    ProxyError,
    Response,
    TooManyBackendsError,
    TooManyProxiesError,
    empty_middleware,
    empty_middleware_with_logger,
    new_read_closer_wrapper,
    noop_proxy,
)
from gatewaypipe.request import Request


def _dummy_proxy(response):
    async def proxy(_request):
        return response

    return proxy


@pytest.mark.asyncio
async def test_empty_middleware_ok():
    expected = Response()
    result = await empty_middleware(_dummy_proxy(expected))(Request())
    assert result is expected


def test_empty_middleware_too_many_proxies():
    with pytest.raises(TooManyProxiesError):
        empty_middleware(noop_proxy, noop_proxy)


def test_empty_middleware_without_proxies():
    with pytest.raises(NotEnoughProxiesError):
        empty_middleware_with_logger(None)


@pytest.mark.asyncio
async def test_noop_proxy_returns_nothing():
    assert await noop_proxy(Request()) is None


@pytest.mark.asyncio
async def test_wrapper():
    expected = b"supu"
    cancelled = asyncio.Event()
    stream = io.BytesIO(expected)

    wrapper = new_read_closer_wrapper(cancelled, stream)
    content = wrapper.read()
    assert not stream.closed
    assert len(content) == 4
    assert content == expected

    cancelled.set()
    await asyncio.sleep(0.1)
    assert stream.closed
    with pytest.raises(ValueError):
        wrapper.read()


@pytest.mark.asyncio
async def test_wrapper_close():
    stream = io.BytesIO(b"abc")
    with new_read_closer_wrapper(asyncio.Event(), stream) as wrapper:
        assert wrapper.read(2) == b"ab"
    assert stream.closed


@pytest.mark.parametrize(
    "error, message",
    [
        (NoBackendsError, "all endpoints must have at least one backend"),
        (TooManyBackendsError, "too many backends for this proxy"),
        (TooManyProxiesError, "too many proxies for this proxy middleware"),
        (NotEnoughProxiesError, "not enough proxies for this endpoint"),
    ],
)
def test_error_messages(error, message):
    instance = error()
    assert isinstance(instance, ProxyError)
    assert str(instance) == message