# resgw

`resgw` is the per-client core of a realtime API gateway. A client subscribes to
resources, which are models and collections. The package tracks those
subscriptions and the references between them. It turns resource events into
client event messages, and it passes call, auth and new requests on to a
resource cache that you supply.

It has no dependencies outside the standard library.

## Modules

### `resgw.errors`

- `ResError` is an exception with a `code`, a `message` and optional `data`.
  `to_dict()` returns `{"code": ..., "message": ...}`, plus `"data"` when data was
  given.
- The module defines ready-made errors such as `ERR_ACCESS_DENIED`,
  `ERR_NOT_FOUND`, `ERR_TIMEOUT`, `ERR_INVALID_PARAMS`,
  `ERR_UNSUPPORTED_PROTOCOL` and `ERR_SUBSCRIPTION_LIMIT_EXCEEDED`.
- `res_error(err)` converts an exception to a `ResError`:
  - a `ResError` is returned unchanged;
  - a `TimeoutError` becomes `ERR_TIMEOUT`;
  - anything else becomes an internal error.
- `internal_error(err)` wraps an exception or a string as
  `system.internalError`.

### `resgw.version`

- `parse_protocol_version(protocol)` turns `"MAJOR.MINOR.PATCH"` into
  `MAJOR * 1000000 + MINOR * 1000 + PATCH`.
  - `None` or `""` gives `None`.
  - A malformed string, or a part of 1000 or more, raises `ERR_INVALID_PARAMS`.
  - A version outside 1.x raises `ERR_UNSUPPORTED_PROTOCOL`.
- `format_protocol_version(version)` does the reverse.
- `PROTOCOL_VERSION` is the version the package speaks, `"1.2.2"`.

### `resgw.origin`

- `parse_allow_origin(setting)` reads `"*"` or a `;`-separated list of origins.
  `None` means `"*"`. It raises `ValueError` for a malformed origin, or for `*`
  combined with other entries.
- `matches_origins(origins, origin)` compares an origin against the list,
  ignoring ASCII case.
- `origin_checker(setting)` returns a predicate for the value of a request's
  Origin header. A missing header (`None`) and the value `"null"` are always
  accepted.

### `resgw.subscription`

- `Subscription` tracks one resource for one connection. It handles:
  - loading the resource and, recursively, every resource it references;
  - `on_ready()` callbacks;
  - queueing resource events while the resource is loading or while access is
    being checked again;
  - add, remove, change, delete and custom events, which become client messages;
  - `reaccess()`, `can_get()` and `can_call()`.

  Data values and soft references are encoded in the older form for clients
  below protocol 1.2.1.
- The supporting types are:
  - `Value`, `ValueType` and `ResourceType`;
  - `Access`, whose `can_get()` and `can_call(action)` raise `ResError` when
    access is denied;
  - `ResourceEvent`;
  - `Resources`, whose `to_dict()` gives the `models` / `collections` /
    `errors` payload.
- `make_event(rid, event, data)` encodes a client event message as JSON bytes.
- `parse_rid(rid)` splits a resource ID into its name and its query.

### `resgw.connection`

`Connection` owns a client's subscriptions.

- **Ordering.** Work given to `enqueue()` runs one piece at a time, in the order
  it was queued. The first caller drains the queue on its own thread.
- **Subscriptions.**
  - `subscribe()` counts direct and indirect subscriptions. There is a limit of
    256 direct subscriptions per resource.
  - `unsubscribe()` and `unsubscribe_by_rid()` count them down.
  - Reference graphs with no remaining holders are disposed, cyclic ones
    included.
  - `expand_cid()` replaces `{cid}` in a resource ID with the connection ID.
- **Client requests.**
  - Fetching and subscribing: `get_resource()`, `get_subscription()` and
    `subscribe_resource()`.
  - Calls: `call_resource()`, `auth_resource()` and `new_resource()`.
  - `set_version()` sets the client's protocol version.
- **Tokens.**
  - `set_token()` checks access again on every subscription once a token has
    been replaced.
  - `token_reset()` sends an auth request when the connection's token ID is
    among those given.
- **Shutdown.** `dispose()` stops the connection and disposes all of its
  subscriptions.

The constructor is `Connection(cache, logger=None, protocol=VERSION_LEGACY,
reference_throttle=0, send=None)`:

- `send` receives each outgoing event message as bytes.
- `reference_throttle` limits how many referenced resources are loaded at the
  same time.
- `cache` must provide these methods:
  - `add_conn(conn)` and `remove_conn(conn)`;
  - `subscribe(sub, throttle)`, which must later call
    `sub.loaded(resource_sub, err)`;
  - `access(sub, token, cb)`, which must call `cb` with an `Access`;
  - `call(conn, name, query, action, token, params, cb)`;
  - `auth(conn, name, query, action, token, params, cb)`;
  - `custom_auth(conn, subject, query, token, params, cb)`.

  The three request methods call `cb(result, ref_rid, err)`.
- The `resource_sub` passed to `loaded()` must provide:
  - `resource_type`;
  - `get_model()` or `get_collection()`, each returning `(values, version)`;
  - `unsubscribe(sub)`.

## What it does not do

- It has no WebSocket or HTTP server. Reading client requests and writing
  responses is left to the caller.
- It has no message-queue client and no resource cache. Both come in through
  the `cache` object described above.
- It provides no command-line program.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from resgw.version import parse_protocol_version, format_protocol_version
from resgw.origin import origin_checker

assert parse_protocol_version("1.2.1") == 1002001
assert format_protocol_version(1002001) == "1.2.1"

check = origin_checker("http://localhost;https://example.com")
assert check("https://example.com")
assert check(None)                      # no Origin header is accepted
assert not check("http://example.com")
```