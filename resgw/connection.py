"""A client connection, the subscriptions it holds and their clean-up."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Container
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import (
    CODE_TIMEOUT,
    ERR_DISPOSING,
    ERR_INVALID_NEW_RESOURCE_RESPONSE,
    ERR_SUBSCRIPTION_LIMIT_EXCEEDED,
    ResError,
    res_error,
)
from .subscription import Resources, Subscription, parse_rid
from .version import (
    PROTOCOL_VERSION,
    VERSION_CALL_RESOURCE_RESPONSE,
    VERSION_LEGACY,
    parse_protocol_version,
)

CID_PLACEHOLDER = "{cid}"
SUBSCRIPTION_COUNT_LIMIT = 256
TRACE = 5

ResultCallback = Callable[[Any, "BaseException | None"], None]


class _Throttle:
    """Limits how many added functions may be running at the same time."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._active = 0
        self._pending: deque[Callable[[], None]] = deque()
        self._lock = threading.Lock()

    def add(self, f: Callable[[], None]) -> None:
        with self._lock:
            if self._active >= self.limit:
                self._pending.append(f)
                return
            self._active += 1
        f()

    def done(self) -> None:
        with self._lock:
            if not self._pending:
                self._active -= 1
                return
            f = self._pending.popleft()
        f()


class _GCState(Enum):
    STOP = 0
    ROOT = 1
    NONE = 2
    DELETE = 3
    KEEP = 4


@dataclass
class _SubRef:
    sub: Subscription
    indirect: int
    state: _GCState = _GCState.NONE


def _traverse(
    sub: Subscription,
    state: _GCState,
    cb: Callable[[Subscription, _GCState], _GCState],
) -> None:
    if sub.direct > 0:
        return
    state = cb(sub, state)
    if state is _GCState.STOP:
        return
    for ref in list(sub.refs.values()):
        _traverse(ref.sub, state, cb)


def _is_timeout(err: BaseException | None) -> bool:
    if isinstance(err, TimeoutError):
        return True
    return isinstance(err, ResError) and err.code == CODE_TIMEOUT


class Connection:
    """A client connection holding resource subscriptions.

    All callbacks touching subscription state run through enqueue, one at a
    time and in the order they were queued.
    """

    def __init__(
        self,
        cache: Any,
        logger: logging.Logger | None = None,
        protocol: int = VERSION_LEGACY,
        reference_throttle: int = 0,
        send: Callable[[bytes], None] | None = None,
    ) -> None:
        self.cid = uuid.uuid4().hex[:20]
        self.cache = cache
        self.logger = logger or logging.getLogger("resgw")
        self.protocol_version = protocol
        self.reference_throttle = reference_throttle
        self.token: Any = None
        self.tid = ""
        self.subs: dict[str, Subscription] = {}
        self.disposing = False
        self._send = send
        self._queue: deque[Callable[[], None]] = deque()
        self._running = False
        self._lock = threading.Lock()
        cache.add_conn(self)

    def __str__(self) -> str:
        return f"[{self.cid}]"

    # Logging

    def log(self, msg: str) -> None:
        self.logger.info("%s %s", self, msg)

    def error(self, msg: str) -> None:
        self.logger.error("%s %s", self, msg)

    def debug(self, msg: str) -> None:
        self.logger.debug("%s %s", self, msg)

    def trace(self, msg: str) -> None:
        self.logger.log(TRACE, "%s %s", self, msg)

    # Work queue

    def enqueue(self, f: Callable[[], None]) -> bool:
        """Queue f to be run; return False if the connection is disposing."""
        with self._lock:
            if self.disposing:
                return False
            self._queue.append(f)
            if self._running:
                return True
            self._running = True
        self._drain()
        return True

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._running = False
                    return
                f = self._queue.popleft()
            try:
                f()
            except BaseException:
                with self._lock:
                    self._running = False
                raise

    def send(self, data: bytes) -> None:
        """Write an event message to the client."""
        if self._send is not None:
            self.trace(f"<<- {data!r}")
            self._send(data)

    def expand_cid(self, rid: str) -> str:
        """Replace any connection ID placeholder in rid."""
        return rid.replace(CID_PLACEHOLDER, self.cid)

    def set_version(self, protocol: Any) -> str:
        """Set the client protocol version and return the server's version."""
        version = parse_protocol_version(protocol)
        if version is not None:
            self.protocol_version = version
        return PROTOCOL_VERSION

    # Subscriptions

    def subscribe(self, rid: str, direct: bool, throttle: Any = None) -> Subscription:
        """Get or create a subscription, counting it as direct or indirect."""
        if self.disposing:
            raise ERR_DISPOSING
        sub = self.subs.get(rid)
        if sub is not None:
            self._add_count(sub, direct)
            return sub
        if throttle is None and self.reference_throttle > 0:
            throttle = _Throttle(self.reference_throttle)
        sub = Subscription(self, rid, throttle)
        self._add_count(sub, direct)
        self.cache.subscribe(sub, throttle)
        self.subs[rid] = sub
        return sub

    def unsubscribe(self, sub: Subscription, direct: bool, count: int, try_delete: bool) -> None:
        """Count down a subscription, disposing it once nothing holds it."""
        if self.disposing:
            return
        self._remove_count(sub, direct, count, try_delete)

    def unsubscribe_by_rid(self, rid: str, count: int) -> bool:
        """Remove count direct subscriptions of rid; False if not possible."""
        if self.disposing:
            return False
        sub = self.subs.get(rid)
        if sub is None or sub.direct < count:
            return False
        self._remove_count(sub, True, count, True)
        return True

    def _add_count(self, sub: Subscription, direct: bool) -> None:
        if direct:
            if sub.direct >= SUBSCRIPTION_COUNT_LIMIT:
                self.debug(
                    f"Subscription {sub.rid}: Subscription limit exceeded ({sub.direct})"
                )
                raise ERR_SUBSCRIPTION_LIMIT_EXCEEDED
            sub.direct += 1
        else:
            sub.indirect += 1

    def _remove_count(
        self, sub: Subscription, direct: bool, count: int, try_delete: bool
    ) -> None:
        if sub.direct + sub.indirect == 0:
            return
        if direct:
            sub.direct -= count
        else:
            sub.indirect -= count
        if try_delete:
            self._try_delete(sub)

    def _try_delete(self, s: Subscription) -> None:
        if s.direct > 0:
            return
        root = _SubRef(s, s.indirect)
        refs: dict[str, _SubRef] = {s.rid: root}

        def count_down(sub: Subscription, state: _GCState) -> _GCState:
            if state is _GCState.ROOT:
                return _GCState.NONE
            r = refs.get(sub.rid)
            if r is not None:
                r.indirect -= 1
                return _GCState.STOP
            refs[sub.rid] = _SubRef(sub, sub.indirect - 1)
            return _GCState.NONE

        _traverse(s, _GCState.ROOT, count_down)

        if root.indirect > 0:
            return

        def mark(sub: Subscription, state: _GCState) -> _GCState:
            r = refs[sub.rid]
            if r.state is _GCState.KEEP:
                return _GCState.STOP
            if r.indirect > 0 or state is _GCState.KEEP:
                r.state = _GCState.KEEP
                return _GCState.KEEP
            if r.state is not _GCState.NONE:
                return _GCState.STOP
            r.state = _GCState.DELETE
            return _GCState.DELETE

        _traverse(s, _GCState.DELETE, mark)

        for rid, ref in refs.items():
            if ref.state is _GCState.DELETE:
                ref.sub.dispose()
                self.subs.pop(rid, None)

    def access(self, sub: Subscription, cb: Callable[[Any], None]) -> None:
        """Request access for sub using the connection's token."""
        self.cache.access(sub, self.token, cb)

    # Client requests

    def _get_checked(
        self,
        rid: str,
        cb: ResultCallback,
        on_ready: Callable[[Subscription], None],
        unsubscribe_on_error: bool,
    ) -> None:
        try:
            sub = self.subscribe(rid, True)
        except ResError as err:
            cb(None, err)
            return

        def on_access(err: ResError | None) -> None:
            if err is not None:
                cb(None, err)
                self.unsubscribe(sub, True, 1, True)
                return

            def ready() -> None:
                sub_err = sub.error()
                if sub_err is not None:
                    cb(None, sub_err)
                    if unsubscribe_on_error:
                        self.unsubscribe(sub, True, 1, True)
                    return
                on_ready(sub)

            sub.on_ready(ready)

        sub.can_get(on_access)

    def get_resource(self, rid: str, cb: ResultCallback) -> None:
        """Fetch a resource without keeping a subscription; cb(resources, err)."""

        def ready(sub: Subscription) -> None:
            cb(sub.get_rpc_resources(), None)
            sub.release_rpc_resources()
            self.unsubscribe(sub, True, 1, True)

        self._get_checked(rid, cb, ready, False)

    def get_subscription(self, rid: str, cb: ResultCallback) -> None:
        """Pass a loaded subscription to cb, then release it; cb(sub, err)."""

        def ready(sub: Subscription) -> None:
            cb(sub, None)
            sub.release_rpc_resources()
            self.unsubscribe(sub, True, 1, True)

        self._get_checked(rid, cb, ready, False)

    def subscribe_resource(self, rid: str, cb: ResultCallback) -> None:
        """Subscribe to a resource; cb(resources, err)."""

        def ready(sub: Subscription) -> None:
            cb(sub.get_rpc_resources(), None)
            sub.release_rpc_resources()

        self._get_checked(rid, cb, ready, True)

    def _call(
        self,
        rid: str,
        action: str,
        params: Any,
        cb: Callable[[Any, str, BaseException | None], None],
    ) -> None:
        sub = self.subs.get(rid) or Subscription(self, rid, None)

        def on_access(err: ResError | None) -> None:
            if err is not None:
                cb(None, "", err)
                return

            def on_result(result: Any, ref_rid: str, call_err: BaseException | None) -> None:
                self.enqueue(lambda: cb(result, ref_rid, call_err))

            self.cache.call(
                self, sub.resource_name, sub.resource_query, action, self.token, params, on_result
            )

        sub.can_call(action, on_access)

    def call_resource(self, rid: str, action: str, params: Any, cb: ResultCallback) -> None:
        """Call an action on a resource; cb(result, err)."""
        self._call(
            rid,
            action,
            params,
            lambda result, ref_rid, err: self._handle_call_auth_response(
                result, ref_rid, err, cb
            ),
        )

    def auth_resource(self, rid: str, action: str, params: Any, cb: ResultCallback) -> None:
        """Send an auth request on a resource; cb(result, err)."""
        name, query = parse_rid(self.expand_cid(rid))

        def on_result(result: Any, ref_rid: str, err: BaseException | None) -> None:
            self.enqueue(lambda: self._handle_call_auth_response(result, ref_rid, err, cb))

        self.cache.auth(self, name, query, action, self.token, params, on_result)

    def new_resource(self, rid: str, params: Any, cb: ResultCallback) -> None:
        """Call the new action, which must respond with a resource; cb(result, err)."""

        def on_result(result: Any, ref_rid: str, err: BaseException | None) -> None:
            if err is not None:
                cb(None, err)
                return
            if not ref_rid:
                cb(None, ERR_INVALID_NEW_RESOURCE_RESPONSE)
                return
            self._handle_resource_result(ref_rid, cb)

        self._call(rid, "new", params, on_result)

    def _handle_call_auth_response(
        self, result: Any, ref_rid: str, err: BaseException | None, cb: ResultCallback
    ) -> None:
        if err is not None:
            cb(None, err)
            return
        if self.protocol_version < VERSION_CALL_RESOURCE_RESPONSE:
            if ref_rid:
                cb({"rid": ref_rid}, None)
            else:
                cb(result, None)
            return
        if not ref_rid:
            cb({"payload": result}, None)
            return
        self._handle_resource_result(ref_rid, cb)

    def _handle_resource_result(self, ref_rid: str, cb: ResultCallback) -> None:
        try:
            sub = self.subscribe(ref_rid, True)
        except ResError as err:
            cb(None, err)
            return

        def on_access(err: ResError | None) -> None:
            if err is not None:
                # The call succeeded; the resource itself is the access error.
                errors = Resources(errors={sub.rid: res_error(err)})
                cb({"rid": sub.rid, **errors.to_dict()}, None)
                self.unsubscribe(sub, True, 1, True)
                return

            def ready() -> None:
                cb({"rid": sub.rid, **sub.get_rpc_resources().to_dict()}, None)
                sub.release_rpc_resources()

            sub.on_ready(ready)

        sub.can_get(on_access)

    # Tokens

    def set_token(self, token: Any, tid: str) -> None:
        """Set the access token, revalidating access of held subscriptions."""
        self.tid = tid
        if self.token is None:
            self.token = token
            return
        self.token = token
        for sub in list(self.subs.values()):
            sub.reaccess(None)

    def token_reset(self, tids: Container[str], subject: str) -> None:
        """Send an auth request on subject if the token ID is among tids."""

        def run() -> None:
            if not self.tid or self.tid not in tids:
                return

            def on_result(_result: Any, _ref_rid: str, err: BaseException | None) -> None:
                if _is_timeout(err):
                    self.error(f"Token reset auth request timeout on subject: {subject}")

            self.cache.custom_auth(self, subject, "", self.token, None, on_result)

        self.enqueue(run)

    def dispose(self) -> None:
        """Stop accepting work and dispose all subscriptions."""
        self.enqueue(self._dispose)

    def _dispose(self) -> None:
        if self.disposing:
            return
        with self._lock:
            self.disposing = True
        self.cache.remove_conn(self)
        subs, self.subs = self.subs, {}
        for sub in subs.values():
            sub.dispose()