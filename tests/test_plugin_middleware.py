import dataclasses
import posixpath

import pytest

from gatewaypipe.config import Backend, EndpointConfig
from gatewaypipe.modifiers import NAMESPACE, register_modifier
from gatewaypipe.plugin_middleware import (
    RequestWrapper,
    ResponseWrapper,
    new_backend_plugin_middleware,
    new_plugin_middleware,
)
from gatewaypipe.proxy import Metadata, Response, TooManyProxiesError
from gatewaypipe.request import Request


class _TeapotError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.status_code = 418


def _path_request_factory(_cfg):
    def modifier(request):
        return dataclasses.replace(request, path=posixpath.join(request.path, "fooo"))

    return modifier


def _identity_response_factory(_cfg):
    def modifier(response):
        return response

    return modifier


def _reject_request_factory(_cfg):
    def modifier(_request):
        raise _TeapotError("request rejected just because")

    return modifier


def _reject_response_factory(_cfg):
    def modifier(_response):
        raise _TeapotError("response replaced because reasons")

    return modifier


register_modifier("pm-example-request", _path_request_factory, True, False)
register_modifier("pm-example-response", _identity_response_factory, False, True)
register_modifier("pm-error-request", _reject_request_factory, True, False)
register_modifier("pm-error-response", _reject_response_factory, False, True)


def _endpoint(*names):
    return EndpointConfig(extra_config={NAMESPACE: {"name": list(names)}})


def _backend(*names):
    return Backend(extra_config={NAMESPACE: {"name": list(names)}})


@pytest.mark.asyncio
async def test_request_and_response_modifiers_chain():
    seen_paths = []

    async def validator(request):
        seen_paths.append(request.path)
        return Response(
            data={"foo": "bar"},
            is_complete=True,
            metadata=Metadata(headers={}, status_code=0),
        )

    backend_proxy = new_backend_plugin_middleware(None, _backend("pm-example-request"))(validator)
    proxy = new_plugin_middleware(
        None, _endpoint("pm-example-request", "pm-example-response")
    )(backend_proxy)

    response = await proxy(Request(path="/bar"))
    assert seen_paths == ["/bar/fooo/fooo"]
    assert response.data == {"foo": "bar"}
    assert response.is_complete is True


@pytest.mark.asyncio
async def test_request_modifier_error_stops_the_pipe():
    calls = []

    async def validator(request):
        calls.append(request)
        return None

    backend_proxy = new_backend_plugin_middleware(None, Backend())(validator)
    proxy = new_plugin_middleware(None, _endpoint("pm-error-request"))(backend_proxy)

    with pytest.raises(_TeapotError) as info:
        await proxy(Request(path="/bar"))
    assert info.value.status_code == 418
    assert str(info.value) == "request rejected just because"
    assert calls == []


@pytest.mark.asyncio
async def test_response_modifier_error_after_backend_call():
    calls = []

    async def validator(request):
        calls.append(request.path)
        return Response(data={"foo": "bar"}, is_complete=True)

    backend_proxy = new_backend_plugin_middleware(None, Backend())(validator)
    proxy = new_plugin_middleware(None, _endpoint("pm-error-response"))(backend_proxy)

    with pytest.raises(_TeapotError) as info:
        await proxy(Request(path="/bar"))
    assert info.value.status_code == 418
    assert str(info.value) == "response replaced because reasons"
    assert calls == ["/bar"]


@pytest.mark.asyncio
async def test_poisoned_plugin_is_ignored():
    register_modifier("pm-poisoned", lambda cfg: None, False, True)
    expected = Response(data={"foo": "bar"}, is_complete=True)

    async def validator(_request):
        return expected

    backend_proxy = new_backend_plugin_middleware(None, Backend())(validator)
    proxy = new_plugin_middleware(None, _endpoint("pm-poisoned"))(backend_proxy)
    assert proxy is validator
    assert await proxy(Request(path="/bar")) is expected


def test_without_config_returns_next_proxy():
    async def validator(_request):
        return None

    assert new_plugin_middleware(None, EndpointConfig())(validator) is validator
    assert new_backend_plugin_middleware(None, Backend())(validator) is validator


def test_non_list_names_return_next_proxy():
    async def validator(_request):
        return None

    endpoint = EndpointConfig(extra_config={NAMESPACE: {"name": "pm-example-request"}})
    assert new_plugin_middleware(None, endpoint)(validator) is validator


def test_unknown_plugins_return_next_proxy():
    async def validator(_request):
        return None

    endpoint = _endpoint("pm-unknown", 42)
    assert new_plugin_middleware(None, endpoint)(validator) is validator


def test_too_many_proxies():
    async def validator(_request):
        return None

    middleware = new_plugin_middleware(None, _endpoint("pm-example-request"))
    with pytest.raises(TooManyProxiesError):
        middleware(validator, validator)


@pytest.mark.asyncio
async def test_factory_receives_plugin_config():
    received = []

    def factory(cfg):
        received.append(cfg)
        return lambda request: request

    register_modifier("pm-config-capture", factory, True, False)
    cfg = {"name": ["pm-config-capture"], "pm-config-capture": {"a": 1}}
    endpoint = EndpointConfig(extra_config={NAMESPACE: cfg})

    async def validator(_request):
        return None

    new_plugin_middleware(None, endpoint)(validator)
    assert received == [cfg]


@pytest.mark.asyncio
async def test_request_modifier_updates_every_field():
    def factory(_cfg):
        def modifier(request):
            assert isinstance(request, RequestWrapper)
            return RequestWrapper(
                method="POST",
                url="http://backend.example.com/x",
                query={"q": ["1"]},
                path="/x",
                body=None,
                params={"Id": "7"},
                headers={"X-Foo": ["bar"]},
            )

        return modifier

    register_modifier("pm-replace-request", factory, True, False)
    captured = []

    async def validator(request):
        captured.append(request)
        return None

    proxy = new_plugin_middleware(None, _endpoint("pm-replace-request"))(validator)
    original = Request(method="GET", path="/bar")
    assert await proxy(original) is None
    assert captured == [original]
    assert original.method == "POST"
    assert original.url == "http://backend.example.com/x"
    assert original.query == {"q": ["1"]}
    assert original.path == "/x"
    assert original.params == {"Id": "7"}
    assert original.headers == {"X-Foo": ["bar"]}


@pytest.mark.asyncio
async def test_non_wrapper_result_is_ignored():
    register_modifier("pm-ignored-request", lambda cfg: (lambda request: "nope"), True, False)

    async def validator(request):
        return Response(data={"path": request.path}, is_complete=True)

    proxy = new_plugin_middleware(None, _endpoint("pm-ignored-request"))(validator)
    response = await proxy(Request(path="/bar"))
    assert response.data == {"path": "/bar"}


@pytest.mark.asyncio
async def test_response_modifier_replaces_data_and_metadata():
    seen_requests = []

    def factory(_cfg):
        def modifier(response):
            assert isinstance(response, ResponseWrapper)
            seen_requests.append(response.request)
            return dataclasses.replace(
                response,
                data={"replaced": True},
                is_complete=False,
                headers={"X-New": ["1"]},
                status_code=201,
            )

        return modifier

    register_modifier("pm-replace-response", factory, False, True)

    async def validator(_request):
        return Response(
            data={"foo": "bar"},
            is_complete=True,
            metadata=Metadata(headers={"X-Old": ["0"]}, status_code=200),
        )

    proxy = new_plugin_middleware(None, _endpoint("pm-replace-response"))(validator)
    response = await proxy(Request(path="/bar", headers={"X-Foo": ["bar"]}))
    assert response.data == {"replaced": True}
    assert response.is_complete is False
    assert response.metadata == Metadata(headers={"X-New": ["1"]}, status_code=201)
    assert [r.headers for r in seen_requests] == [{"X-Foo": ["bar"]}]
    assert seen_requests[0].path == "/bar"


@pytest.mark.asyncio
async def test_missing_response_skips_response_modifiers():
    calls = []

    def factory(_cfg):
        def modifier(response):
            calls.append(response)
            return response

        return modifier

    register_modifier("pm-count-response", factory, False, True)

    async def validator(_request):
        return None

    proxy = new_plugin_middleware(None, _endpoint("pm-count-response"))(validator)
    assert await proxy(Request()) is None
    assert calls == []


@pytest.mark.asyncio
async def test_backend_error_skips_response_modifiers():
    calls = []

    def factory(_cfg):
        def modifier(response):
            calls.append(response)
            return response

        return modifier

    register_modifier("pm-count-response-err", factory, False, True)

    async def failing(_request):
        raise RuntimeError("backend down")

    proxy = new_backend_plugin_middleware(None, _backend("pm-count-response-err"))(failing)
    with pytest.raises(RuntimeError, match="backend down"):
        await proxy(Request())
    assert calls == []