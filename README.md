# gatewaypipe

`gatewaypipe` provides the building blocks of an API gateway's proxy layer.
A *proxy* is an async callable that takes a `Request` and returns a
`Response` (or `None`). A proxy reports failure by raising. A *middleware*
takes one or more proxies and returns a new proxy, so middlewares can be
stacked to build the pipeline behind an endpoint.

## Installation

```
pip install gatewaypipe
```

The package has no runtime dependencies.

## Modules

- `gatewaypipe.request`: the `Request` dataclass, with `generate_path`, which
  fills `{{.Name}}` placeholders from `params`, and `clone` for a shallow copy.
  `clone_request` makes a deep copy and copies the body into memory.
  `clone_request_headers` and `clone_request_params` copy headers and params.
- `gatewaypipe.proxy`: `Response`, `Metadata` and `NAMESPACE`, the key of the
  proxy section in extra configuration. It also has the errors `ProxyError`,
  `NoBackendsError`, `TooManyBackendsError`, `TooManyProxiesError` and
  `NotEnoughProxiesError`, plus `empty_middleware`,
  `empty_middleware_with_logger` and `noop_proxy`. `ReadCloserWrapper` and
  `new_read_closer_wrapper` close a stream once an `asyncio.Event` is set.
- `gatewaypipe.config`: the `Backend` and `EndpointConfig` dataclasses.
  Timeouts are given in seconds. `DEFAULT_TIMEOUT` is 2 seconds.
- `gatewaypipe.merging`: `new_merge_data_middleware` calls every backend of an
  endpoint and merges their data. The calls run in parallel or, when
  `sequential` is set, one after another. Each call is limited to 85% of the
  endpoint timeout. In sequential mode, `{{.RespN_field}}` placeholders and
  `sequential_propagated_params` inject values from earlier responses into the
  params of later requests. When every backend fails it raises `MergeError`.
  When only some fail it raises `PartialResponseError`, which carries the
  merged partial response in `.response`. Combiners are looked up by the
  `combiner` key. You add your own with `register_response_combiner`, or
  through the `CombinerRegister` returned by `new_register`. `combine_data`
  is the default combiner. `IncrementalMergeAccumulator` merges results one
  at a time.
- `gatewaypipe.shadow`: `ShadowFactory` and `new_shadow_factory` wrap any
  object that has a `new(endpoint)` method. Backends marked `shadow: true`
  get a proxy of their own, which receives a copy of each request in the
  background and whose outcome is ignored. `shadow_timeout` (for example
  `"10s"`, parsed by `parse_duration`) limits the shadow call. The module
  also has `is_shadow_backend`, the `shadow_middleware*` variants,
  `new_shadow_proxy` and `new_shadow_proxy_with_timeout`.
- `gatewaypipe.static`: `new_static_middleware` adds the configured `data` to
  responses according to a `strategy`: `always` (the default), `success`,
  `errored`, `complete` or `incomplete`. On a matching error it attaches the
  data to the exception's `response`. `static_config_from` reads the
  configuration into a `StaticConfig`.
- `gatewaypipe.query_filter`: `new_filter_query_strings_middleware` passes on
  only the query strings listed in `Backend.query_strings_to_pass`.
- `gatewaypipe.logging_middleware`: `new_logging_middleware` logs the start
  of each call, how long it took, and failures or empty responses, through a
  `logging.Logger`.
- `gatewaypipe.modifiers`: a register of request and response modifier
  factories. Use `register_modifier`, `get_request_modifier` and
  `get_response_modifier` to work with it. `load` takes registerer objects
  that expose `register_modifiers(func)` and, optionally,
  `register_logger(logger)` and `register_context(context)`. It returns how
  many registerers loaded, or raises `LoaderError`.
- `gatewaypipe.plugin_middleware`: `new_plugin_middleware` (per endpoint) and
  `new_backend_plugin_middleware` (per backend) run the modifiers named under
  the `name` list of the `gatewaypipe/proxy/plugin` section. Modifiers
  receive a `RequestWrapper` or a `ResponseWrapper`, and reject by raising.
- `gatewaypipe.http_proxy`: `new_http_proxy_detailed` turns a `Request` into
  a `BackendRequest`, hands it to an executor you supply, runs a status
  handler, and parses the `BackendResponse`. There are two parsers.
  `default_http_response_parser_factory` with `HTTPResponseParserConfig`
  decodes the body and handles gzip. `noop_http_response_parser` exposes
  the raw body stream. `new_request_builder_middleware` and
  `new_request_builder_middleware_with_logger` set the backend path and
  method on each request.
- `gatewaypipe.register`: thread-safe `Untyped` and `Namespaced` registers.

## Example

```python
import asyncio

from gatewaypipe.config import Backend, EndpointConfig
from gatewaypipe.merging import new_merge_data_middleware
from gatewaypipe.proxy import Response
from gatewaypipe.request import Request


async def users(request):
    return Response(data={"user": "alice"}, is_complete=True)


async def orders(request):
    return Response(data={"orders": [1, 2]}, is_complete=True)


endpoint = EndpointConfig(backend=[Backend(), Backend()], timeout=1.0)
merged = new_merge_data_middleware(None, endpoint)(users, orders)
response = asyncio.run(merged(Request()))
print(response.data, response.is_complete)
# {'user': 'alice', 'orders': [1, 2]} True
```

## What the package does not do

`gatewaypipe` is a library of proxies and middlewares only. It does not
include any of the following:

- **No HTTP client.** `new_http_proxy_detailed` expects you to supply the
  executor that actually sends a `BackendRequest`, and the status handler
  that checks its result.
- **No router or server.** Nothing in the package listens for requests or
  maps incoming routes to endpoints. You call the assembled proxy from your
  own server.
- **No configuration file loader, and no command-line program.**
- **No plugin discovery.** Modifiers come from objects you pass to `load` or
  register directly. Nothing is loaded from disk.

## Running the tests

```
pip install -e ".[test]"
pytest
```