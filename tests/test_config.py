import dataclasses

from gatewaypipe.config import Backend, EndpointConfig


def test_backend_defaults_are_not_shared():
    first = Backend()
    second = Backend()
    first.extra_config["k"] = 1
    first.query_strings_to_pass.append("q")
    assert second.extra_config == {}
    assert second.query_strings_to_pass == []


def test_endpoint_holds_given_backends():
    b1 = Backend(url_pattern="/a")
    b2 = Backend(url_pattern="/b", method="POST")
    endpoint = EndpointConfig(endpoint="/foo", backend=[b1, b2], timeout=0.5)
    assert endpoint.backend[0] is b1
    assert endpoint.backend[1].method == "POST"
    assert endpoint.timeout == 0.5


def test_replace_keeps_other_fields():
    original = EndpointConfig(endpoint="/foo", method="GET", extra_config={"x": 1})
    copy = dataclasses.replace(original, backend=[Backend()])
    assert copy.endpoint == "/foo"
    assert copy.extra_config is original.extra_config
    assert original.backend == []
    assert len(copy.backend) == 1


def test_backends_compare_by_value():
    assert Backend(url_pattern="/x", method="GET") == Backend(url_pattern="/x", method="GET")
    assert Backend(url_pattern="/x") != Backend(url_pattern="/y")