"""Per-connection resource subscriptions and the events they produce."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .errors import (
    CODE_ACCESS_DENIED,
    ERR_ACCESS_DENIED,
    ERR_DELETED,
    ERR_DISPOSED_SUBSCRIPTION,
    ResError,
    res_error,
)
from .version import VERSION_SOFT_RESOURCE_REFERENCE_AND_DATA_VALUE


class ResourceType(Enum):
    UNSET = 0
    MODEL = 1
    COLLECTION = 2


class ValueType(Enum):
    PRIMITIVE = 0
    REFERENCE = 1
    SOFT_REFERENCE = 2
    DATA = 3


@dataclass(frozen=True)
class Value:
    """A model property or collection item value."""

    type: ValueType
    raw: Any
    rid: str = ""

    @classmethod
    def primitive(cls, value: Any) -> Value:
        return cls(ValueType.PRIMITIVE, value)

    @classmethod
    def reference(cls, rid: str) -> Value:
        return cls(ValueType.REFERENCE, {"rid": rid}, rid)

    @classmethod
    def soft_reference(cls, rid: str) -> Value:
        return cls(ValueType.SOFT_REFERENCE, {"rid": rid, "soft": True}, rid)

    @classmethod
    def data(cls, value: Any) -> Value:
        return cls(ValueType.DATA, {"data": value})

    def legacy(self) -> Any:
        """Return the value as encoded for clients older than protocol 1.2.1."""
        if self.type is ValueType.SOFT_REFERENCE:
            return self.rid
        if self.type is ValueType.DATA:
            return "[Data]"
        return self.raw


@dataclass
class Access:
    """Result of an access request."""

    get: bool = False
    call: str | None = None
    error: ResError | None = None

    def can_get(self) -> None:
        """Raise a ResError if get access is not granted."""
        if self.error is not None:
            raise self.error
        if not self.get:
            raise ERR_ACCESS_DENIED

    def can_call(self, action: str) -> None:
        """Raise a ResError if calling action is not granted."""
        if self.error is not None:
            raise self.error
        if self.call is None:
            raise ERR_ACCESS_DENIED
        if self.call == "*" or action in self.call.split(","):
            return
        raise ERR_ACCESS_DENIED


@dataclass
class ResourceEvent:
    """An event on a cached resource."""

    event: str
    payload: Any = None
    version: int = 0
    update: bool = False
    idx: int = 0
    value: Value | None = None
    changed: dict[str, Value] = field(default_factory=dict)
    old_values: dict[str, Value] = field(default_factory=dict)


@dataclass
class Resources:
    """Resources and errors sent to a client in a response or event."""

    models: dict[str, dict[str, Value]] = field(default_factory=dict)
    collections: dict[str, list[Value]] = field(default_factory=dict)
    errors: dict[str, ResError] = field(default_factory=dict)
    legacy: bool = False

    def _enc(self, v: Value) -> Any:
        return v.legacy() if self.legacy else v.raw

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.models:
            out["models"] = {
                rid: {k: self._enc(v) for k, v in m.items()} for rid, m in self.models.items()
            }
        if self.collections:
            out["collections"] = {
                rid: [self._enc(v) for v in c] for rid, c in self.collections.items()
            }
        if self.errors:
            out["errors"] = {rid: e.to_dict() for rid, e in self.errors.items()}
        return out


def _encode(obj: Any) -> Any:
    if isinstance(obj, (Resources, ResError)):
        return obj.to_dict()
    if isinstance(obj, Value):
        return obj.raw
    raise TypeError(f"cannot encode {type(obj).__name__}")


def make_event(rid: str, event: str, data: Any) -> bytes:
    """Encode a client event message."""
    msg: dict[str, Any] = {"event": f"{rid}.{event}"}
    if data is not None:
        msg["data"] = data
    return json.dumps(msg, default=_encode, separators=(",", ":")).encode()


def parse_rid(rid: str) -> tuple[str, str]:
    """Split a resource ID into its name and query parts."""
    name, _, query = rid.partition("?")
    return name, query


class _State(IntEnum):
    DISPOSED = 0
    LOADING = 1
    LOADED = 2
    READY = 3
    TO_SEND = 4
    SENT = 5
    DELETED = 6


_QUEUE_LOADING = 1
_QUEUE_REACCESS = 2

_FLAG_ACCESS_CALLED = 1
_FLAG_REACCESS = 2


@dataclass
class _Reference:
    sub: Subscription
    count: int


@dataclass
class _ReadyCallback:
    cb: Callable[[], None]
    ref_map: dict[str, bool] = field(default_factory=dict)
    loading: int = 0


class Subscription:
    """A resource subscription made by a client connection."""

    def __init__(self, conn: Any, rid: str, throttle: Any = None) -> None:
        self.rid = rid
        self.resource_name, self.resource_query = parse_rid(conn.expand_cid(rid))
        self.conn = conn
        self.state = _State.LOADING
        self.resource_type = ResourceType.UNSET
        self.refs: dict[str, _Reference] = {}
        self.direct = 0
        self.indirect = 0
        self._ready_callbacks: list[_ReadyCallback] = []
        self._resource_sub: Any = None
        self._model: dict[str, Value] | None = None
        self._collection: list[Value] | None = None
        self._version = 0
        self._err: BaseException | None = None
        self._queue_flag = _QUEUE_LOADING
        self._event_queue: list[ResourceEvent] = []
        self._access: Access | None = None
        self._access_callbacks: list[Callable[[Access], None]] = []
        self._flags = 0
        self._throttle = throttle

    @property
    def cid(self) -> str:
        return self.conn.cid

    @property
    def token(self) -> Any:
        return self.conn.token

    @property
    def model_values(self) -> dict[str, Value]:
        return self._model

    @property
    def collection_values(self) -> list[Value]:
        return self._collection

    def _legacy(self) -> bool:
        return self.conn.protocol_version < VERSION_SOFT_RESOURCE_REFERENCE_AND_DATA_VALUE

    def is_ready(self) -> bool:
        return self.state >= _State.READY

    def is_sent(self) -> bool:
        return self.state == _State.SENT

    def error(self) -> BaseException | None:
        """Return the loading error, if any."""
        if self.state == _State.DISPOSED:
            return ERR_DISPOSED_SUBSCRIPTION
        return self._err

    def ref(self, rid: str) -> Subscription | None:
        r = self.refs.get(rid)
        return r.sub if r else None

    def loaded(self, resource_sub: Any, err: BaseException | None) -> None:
        """Called by the cache once the resource is loaded or has failed."""

        def run() -> None:
            if err is not None:
                self._err = err
                self._done_loading()
                return
            if self.state == _State.DISPOSED:
                resource_sub.unsubscribe(self)
                return
            self._resource_sub = resource_sub
            self.resource_type = resource_sub.resource_type
            self.state = _State.LOADED
            self._set_resource()
            if self._err is not None:
                self._done_loading()
                return
            rcbs, self._ready_callbacks = self._ready_callbacks, []
            for rcb in rcbs:
                self._collect_refs(rcb)

        if not self.conn.enqueue(run) and err is None:
            resource_sub.unsubscribe(self)

    def _set_resource(self) -> None:
        if self.resource_type is ResourceType.COLLECTION:
            self._queue_events(_QUEUE_LOADING)
            values, version = self._resource_sub.get_collection()
            if not all(self._subscribe_ref(v) for v in values):
                return
            self._collection = values
            self._version = version
        elif self.resource_type is ResourceType.MODEL:
            self._queue_events(_QUEUE_LOADING)
            values, version = self._resource_sub.get_model()
            if not all(self._subscribe_ref(v) for v in values.values()):
                return
            self._model = values
            self._version = version
        else:
            err = ValueError(f"subscription {self.rid}: unknown resource type")
            self.conn.error(f"Error loading {err}")
            self._err = err

    def on_ready(self, cb: Callable[[], None]) -> None:
        """Call cb once the resource and all its references are loaded."""
        if self.is_ready():
            cb()
            return
        self._on_loaded(_ReadyCallback(cb=cb))

    def _on_loaded(self, rcb: _ReadyCallback) -> None:
        rcb.ref_map[self.rid] = True
        rcb.loading += 1
        if self.state >= _State.LOADED:
            self._collect_refs(rcb)
        else:
            self._ready_callbacks.append(rcb)

    def get_rpc_resources(self) -> Resources:
        """Collect all unsent resources, queueing events until released."""
        r = Resources(legacy=self._legacy())
        self._populate_resources(r)
        return r

    def release_rpc_resources(self) -> None:
        """Mark resources as sent and release queued events."""
        if self.state in (_State.DISPOSED, _State.SENT) or self._err is not None:
            return
        self.state = _State.SENT
        for ref in list(self.refs.values()):
            ref.sub.release_rpc_resources()
        self._unqueue_events(_QUEUE_LOADING)

    def _queue_events(self, reason: int) -> None:
        self._queue_flag |= reason

    def _unqueue_events(self, reason: int) -> None:
        self._queue_flag &= ~reason
        if self._queue_flag:
            return
        if self._flags & _FLAG_REACCESS:
            self._handle_reaccess(None)
            if self._queue_flag:
                return
        eq, self._event_queue = self._event_queue, []
        for i, ev in enumerate(eq):
            self._process_event(ev)
            if self._queue_flag:
                self._event_queue = eq[i + 1:] + self._event_queue
                return

    def _populate_resources(self, r: Resources) -> None:
        if self.state in (_State.SENT, _State.TO_SEND):
            return
        err = self.error()
        if err is not None:
            r.errors[self.rid] = res_error(err)
            return
        if self.resource_type is ResourceType.COLLECTION:
            r.collections[self.rid] = self._collection
        elif self.resource_type is ResourceType.MODEL:
            r.models[self.rid] = self._model
        self.state = _State.TO_SEND
        for ref in list(self.refs.values()):
            ref.sub._populate_resources(r)

    def _subscribe_ref(self, v: Value) -> bool:
        if v.type is not ValueType.REFERENCE:
            return True
        try:
            self._add_reference(v.rid)
        except ResError as err:
            self.conn.debug(f"Failed to subscribe to {v.rid}. Aborting subscribeRef")
            for ref in list(self.refs.values()):
                self.conn.unsubscribe(ref.sub, False, 1, True)
            self.refs = {}
            self._err = err
            self._done_loading()
            return False
        return True

    def _collect_refs(self, rcb: _ReadyCallback) -> None:
        for rid, ref in list(self.refs.items()):
            if ref.sub.is_ready() or rcb.ref_map.get(rid):
                continue
            ref.sub._on_loaded(rcb)
        rcb.loading -= 1
        self._test_ready(rcb)

    @staticmethod
    def _test_ready(rcb: _ReadyCallback) -> None:
        if rcb.loading == 0:
            rcb.cb()

    def _unsubscribe_refs(self) -> None:
        for ref in list(self.refs.values()):
            self.conn.unsubscribe(ref.sub, False, 1, False)
        self.refs = {}

    def _add_reference(self, rid: str) -> Subscription:
        ref = self.refs.get(rid)
        if ref is None:
            sub = self.conn.subscribe(rid, False, self._throttle)
            ref = _Reference(sub, 1)
            self.refs[rid] = ref
        else:
            ref.count += 1
        return ref.sub

    def _remove_reference(self, rid: str) -> None:
        ref = self.refs[rid]
        ref.count -= 1
        if ref.count == 0:
            self.conn.unsubscribe(ref.sub, False, 1, True)
            self.refs.pop(rid, None)

    def event(self, event: ResourceEvent) -> None:
        """Pass a resource event to the subscription."""

        def run() -> None:
            if event.event == "reaccess":
                self._reaccess(None)
                return
            if self._resource_sub is None:
                return
            if self._queue_flag:
                self._event_queue.append(event)
                return
            self._process_event(event)

        self.conn.enqueue(run)

    def _send(self, event: str, data: Any) -> None:
        self.conn.send(make_event(self.rid, event, data))

    def _process_event(self, event: ResourceEvent) -> None:
        if self._version != event.version:
            return
        if event.update:
            self._version += 1
        typ = self._resource_sub.resource_type
        if typ is ResourceType.COLLECTION:
            self._process_collection_event(event)
        elif typ is ResourceType.MODEL:
            self._process_model_event(event)
        else:
            self.conn.error(f"Subscription {self.rid}: Unknown resource type: {typ}")

    def _process_collection_event(self, event: ResourceEvent) -> None:
        name = event.event
        if name == "add":
            v = event.value
            idx = event.idx
            if v.type is ValueType.REFERENCE:
                try:
                    sub = self._add_reference(v.rid)
                except ResError as err:
                    self.conn.error(
                        f"Subscription {self.rid}: Error subscribing to resource {v.rid}: {err}"
                    )
                    return
                if sub.is_sent():
                    self._send(name, {"idx": idx, "value": v.raw})
                    return
                self._queue_events(_QUEUE_LOADING)

                def ready() -> None:
                    if self.state == _State.DISPOSED:
                        return
                    r = sub.get_rpc_resources()
                    data: dict[str, Any] = {"idx": idx, "value": v.raw}
                    resources = r.to_dict()
                    if resources:
                        data["resources"] = resources
                    self._send(name, data)
                    sub.release_rpc_resources()
                    self._unqueue_events(_QUEUE_LOADING)

                sub.on_ready(ready)
            elif v.type in (ValueType.DATA, ValueType.SOFT_REFERENCE) and self._legacy():
                self._send(name, {"idx": idx, "value": v.legacy()})
            else:
                self._send(name, {"idx": idx, "value": v.raw})
        elif name == "remove":
            v = event.value
            if v is not None and v.type is ValueType.REFERENCE:
                self._remove_reference(v.rid)
            self._send(name, event.payload)
        elif name == "delete":
            self._delete(event)
        else:
            self._send(name, event.payload)

    def _delete(self, event: ResourceEvent) -> None:
        self.state = _State.DELETED
        self._send(event.event, event.payload)
        self._unsubscribe_direct(ERR_DELETED)

    def _change_values(self, changed: dict[str, Value]) -> dict[str, Any]:
        if self._legacy():
            return {k: v.legacy() for k, v in changed.items()}
        return {k: v.raw for k, v in changed.items()}

    def _process_model_event(self, event: ResourceEvent) -> None:
        name = event.event
        if name == "change":
            ch = event.changed
            subs: list[Subscription] = []
            for v in ch.values():
                if v.type is ValueType.REFERENCE:
                    try:
                        sub = self._add_reference(v.rid)
                    except ResError as err:
                        self.conn.error(
                            f"Subscription {self.rid}: Error subscribing to resource {v.rid}: {err}"
                        )
                        return
                    if not sub.is_sent():
                        subs.append(sub)
            for k in ch:
                ov = event.old_values.get(k)
                if ov is not None and ov.type is ValueType.REFERENCE:
                    self._remove_reference(ov.rid)

            if not subs:
                self._send(name, {"values": self._change_values(ch)})
                return

            self._queue_events(_QUEUE_LOADING)
            count = len(subs)

            def ready() -> None:
                nonlocal count
                if self.state == _State.DISPOSED:
                    return
                count -= 1
                if count > 0:
                    return
                r = Resources(legacy=self._legacy())
                for s in subs:
                    s._populate_resources(r)
                data: dict[str, Any] = {"values": self._change_values(ch)}
                resources = r.to_dict()
                if resources:
                    data["resources"] = resources
                self._send(name, data)
                for s in subs:
                    s.release_rpc_resources()
                self._unqueue_events(_QUEUE_LOADING)

            for sub in subs:
                sub.on_ready(ready)
        elif name == "delete":
            self._delete(event)
        else:
            self._send(name, event.payload)

    def _handle_reaccess(self, throttle: Any) -> None:
        self._access = None
        self._flags &= ~_FLAG_REACCESS
        if self.direct == 0:
            return
        self._queue_events(_QUEUE_REACCESS)

        def done(a: Access) -> None:
            self._validate_access(a)
            self._unqueue_events(_QUEUE_REACCESS)

        self._load_access(done, throttle)

    def _validate_access(self, a: Access) -> None:
        try:
            a.can_get()
        except ResError as err:
            self._unsubscribe_direct(err)

    def _unsubscribe_direct(self, reason: ResError) -> None:
        if self.direct > 0:
            self.conn.unsubscribe(self, True, self.direct, True)
            self._send("unsubscribe", {"reason": reason.to_dict()})

    def dispose(self) -> None:
        """Release the resource subscription and mark this as disposed."""
        if self.state == _State.DISPOSED:
            return
        state = self.state
        self.state = _State.DISPOSED
        self._ready_callbacks = []
        self._event_queue = []
        self._throttle = None
        if self._resource_sub is not None:
            self._unsubscribe_refs()
            if state != _State.DELETED:
                self._resource_sub.unsubscribe(self)
            self._resource_sub = None

    def _done_loading(self) -> None:
        self.state = _State.READY
        rcbs, self._ready_callbacks = self._ready_callbacks, []
        self._throttle = None
        for rcb in rcbs:
            rcb.loading -= 1
            self._test_ready(rcb)

    def reaccess(self, throttle: Any = None) -> None:
        """Queue a new access check for the subscription."""
        self.conn.enqueue(lambda: self._reaccess(throttle))

    def _reaccess(self, throttle: Any) -> None:
        if self.state == _State.DISPOSED:
            return
        if self._queue_flag:
            self._flags |= _FLAG_REACCESS
            return
        self._handle_reaccess(throttle)

    def _load_access(self, cb: Callable[[Access], None], throttle: Any) -> None:
        if self._access is not None:
            cb(self._access)
            return
        self._access_callbacks.append(cb)
        if self._flags & _FLAG_ACCESS_CALLED:
            return
        self._flags |= _FLAG_ACCESS_CALLED

        def handle(access: Access) -> None:
            if self.state == _State.DISPOSED:
                return
            cbs, self._access_callbacks = self._access_callbacks, []
            self._flags &= ~_FLAG_ACCESS_CALLED
            if access.error is None or access.error.code == CODE_ACCESS_DENIED:
                self._access = access
            for f in cbs:
                f(access)

        if throttle is not None:

            def on_access(access: Access) -> None:
                self.conn.enqueue(lambda: handle(access))
                throttle.done()

            throttle.add(lambda: self.conn.access(self, on_access))
        else:
            self.conn.access(self, lambda access: self.conn.enqueue(lambda: handle(access)))

    def can_get(self, cb: Callable[[ResError | None], None]) -> None:
        """Call cb with None if get access is granted, or with the error."""

        def check(a: Access) -> None:
            try:
                a.can_get()
            except ResError as err:
                cb(err)
                return
            cb(None)

        self._load_access(check, None)

    def can_call(self, action: str, cb: Callable[[ResError | None], None]) -> None:
        """Call cb with None if calling action is granted, or with the error."""

        def check(a: Access) -> None:
            try:
                a.can_call(action)
            except ResError as err:
                cb(err)
                return
            cb(None)

        self._load_access(check, None)