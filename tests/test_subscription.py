import json

import pytest

from resgw.errors import ERR_ACCESS_DENIED, ERR_NOT_FOUND, ResError
from resgw.subscription import (
    Access,
    ResourceEvent,
    ResourceType,
    Resources,
    Subscription,
    Value,
    make_event,
    parse_rid,
)
from resgw.version import VERSION_LATEST, VERSION_LEGACY


class FakeResourceSub:
    def __init__(self, typ, values, version=0):
        self.resource_type = typ
        self.values = values
        self.version = version
        self.unsubscribed = []

    def get_model(self):
        return self.values, self.version

    def get_collection(self):
        return self.values, self.version

    def unsubscribe(self, sub):
        self.unsubscribed.append(sub)


class FakeConn:
    def __init__(self, protocol=VERSION_LATEST):
        self.protocol_version = protocol
        self.cid = "cid1"
        self.token = None
        self.sent = []
        self.subs = {}
        self.access_requests = []
        self.unsubscribed = []
        self.logs = []

    def enqueue(self, f):
        f()
        return True

    def expand_cid(self, rid):
        return rid.replace("{cid}", self.cid)

    def subscribe(self, rid, direct, throttle):
        sub = self.subs.get(rid)
        if sub is None:
            sub = Subscription(self, rid, throttle)
            self.subs[rid] = sub
        if direct:
            sub.direct += 1
        else:
            sub.indirect += 1
        return sub

    def unsubscribe(self, sub, direct, count, try_delete):
        self.unsubscribed.append((sub.rid, direct, count, try_delete))
        if direct:
            sub.direct -= count
        else:
            sub.indirect -= count
        if try_delete and sub.direct + sub.indirect == 0:
            sub.dispose()
            self.subs.pop(sub.rid, None)

    def access(self, sub, cb):
        self.access_requests.append((sub.rid, cb))

    def send(self, data):
        self.sent.append(json.loads(data))

    def error(self, msg):
        self.logs.append(msg)

    def debug(self, msg):
        self.logs.append(msg)


MODEL = {"string": Value.primitive("foo"), "int": Value.primitive(42)}
MODEL_DICT = {"string": "foo", "int": 42}


def subscribed_model(conn, rid="test.model"):
    sub = conn.subscribe(rid, True, None)
    sub.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    sub.get_rpc_resources()
    sub.release_rpc_resources()
    return sub


def test_parse_rid():
    assert parse_rid("test.model") == ("test.model", "")
    assert parse_rid("test.model?q=foo&f=bar") == ("test.model", "q=foo&f=bar")


def test_expand_cid_in_resource_name():
    conn = FakeConn()
    sub = Subscription(conn, "test.{cid}.model?x=1")
    assert sub.resource_name == "test.cid1.model"
    assert sub.resource_query == "x=1"
    assert sub.rid == "test.{cid}.model?x=1"


def test_access_checks():
    Access(get=True).can_get()
    with pytest.raises(ResError) as e:
        Access(get=False).can_get()
    assert e.value == ERR_ACCESS_DENIED
    Access(call="foo,method").can_call("method")
    Access(call="*").can_call("anything")
    with pytest.raises(ResError):
        Access(call="foo,bar").can_call("method")
    with pytest.raises(ResError) as e:
        Access(error=ERR_NOT_FOUND).can_get()
    assert e.value == ERR_NOT_FOUND


def test_make_event_omits_nil_data():
    assert json.loads(make_event("test.model", "delete", None)) == {"event": "test.model.delete"}
    assert json.loads(make_event("a", "custom", {"foo": "bar"})) == {
        "event": "a.custom",
        "data": {"foo": "bar"},
    }


def test_loaded_model_resources():
    conn = FakeConn()
    sub = conn.subscribe("test.model", True, None)
    ready = []
    sub.on_ready(lambda: ready.append(True))
    assert ready == []
    sub.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    assert ready == [True]
    assert sub.get_rpc_resources().to_dict() == {"models": {"test.model": MODEL_DICT}}
    sub.release_rpc_resources()
    assert sub.is_sent()
    assert sub.get_rpc_resources().to_dict() == {}


def test_load_error_in_resources():
    conn = FakeConn()
    sub = Subscription(conn, "test.model", None)
    sub.direct += 1
    sub.loaded(None, ERR_NOT_FOUND)
    assert sub.is_ready()
    assert sub.error() == ERR_NOT_FOUND
    assert sub.get_rpc_resources().to_dict() == {
        "errors": {"test.model": {"code": "system.notFound", "message": "Not found"}}
    }


def test_reference_waits_for_child():
    conn = FakeConn()
    parent = conn.subscribe("test.model.parent", True, None)
    ready = []
    parent.on_ready(lambda: ready.append(True))
    parent.loaded(
        FakeResourceSub(ResourceType.MODEL, {"child": Value.reference("test.model")}), None
    )
    assert ready == []
    child = parent.ref("test.model")
    assert child is conn.subs["test.model"]
    child.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    assert ready == [True]
    assert parent.get_rpc_resources().to_dict() == {
        "models": {
            "test.model.parent": {"child": {"rid": "test.model"}},
            "test.model": MODEL_DICT,
        }
    }


def test_legacy_encoding_of_soft_and_data_values():
    r = Resources(
        models={"m": {"s": Value.soft_reference("test.model"), "d": Value.data([1])}},
        legacy=True,
    )
    assert r.to_dict() == {"models": {"m": {"s": "test.model", "d": "[Data]"}}}
    conn = FakeConn(VERSION_LEGACY)
    sub = conn.subscribe("m", True, None)
    sub.loaded(FakeResourceSub(ResourceType.MODEL, {"d": Value.data([1])}), None)
    assert sub.get_rpc_resources().to_dict() == {"models": {"m": {"d": "[Data]"}}}


def test_delete_event_on_model_sent_to_client():
    conn = FakeConn()
    sub = subscribed_model(conn)
    sub.event(ResourceEvent("delete"))
    assert conn.sent == [
        {"event": "test.model.delete"},
        {
            "event": "test.model.unsubscribe",
            "data": {"reason": {"code": "system.deleted", "message": "Deleted"}},
        },
    ]
    sub.event(ResourceEvent("custom", payload={"foo": "bar"}))
    assert len(conn.sent) == 2


def test_delete_event_on_collection_sent_to_client():
    conn = FakeConn()
    sub = conn.subscribe("test.collection", True, None)
    sub.loaded(FakeResourceSub(ResourceType.COLLECTION, [Value.primitive("foo")]), None)
    assert sub.get_rpc_resources().to_dict() == {"collections": {"test.collection": ["foo"]}}
    sub.release_rpc_resources()
    assert sub.is_sent()
    sub.event(ResourceEvent("delete"))
    assert [m["event"] for m in conn.sent] == [
        "test.collection.delete",
        "test.collection.unsubscribe",
    ]
    assert sub.error().code == "system.disposedSubscription"


def test_delete_event_prior_to_get_response_is_discarded():
    conn = FakeConn()
    sub = conn.subscribe("test.model", True, None)
    sub.event(ResourceEvent("delete"))
    sub.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    assert sub.get_rpc_resources().to_dict() == {"models": {"test.model": MODEL_DICT}}
    sub.release_rpc_resources()
    assert sub.is_sent()
    assert sub.error() is None
    assert conn.sent == []
    sub.event(ResourceEvent("custom", payload={"foo": "bar"}))
    assert conn.sent == [{"event": "test.model.custom", "data": {"foo": "bar"}}]


def test_reaccess_event_denied_unsubscribes():
    conn = FakeConn()
    sub = subscribed_model(conn)
    sub.event(ResourceEvent("reaccess"))
    assert [rid for rid, _ in conn.access_requests] == ["test.model"]
    conn.access_requests[0][1](Access(get=False))
    assert conn.sent == [
        {
            "event": "test.model.unsubscribe",
            "data": {"reason": {"code": "system.accessDenied", "message": "Access denied"}},
        }
    ]


def test_reaccess_event_queues_events_until_granted():
    conn = FakeConn()
    sub = subscribed_model(conn)
    sub.event(ResourceEvent("reaccess"))
    sub.event(ResourceEvent("custom", payload={"foo": "bar"}))
    assert conn.sent == []
    conn.access_requests[0][1](Access(get=True))
    assert conn.sent == [{"event": "test.model.custom", "data": {"foo": "bar"}}]


def test_multiple_reaccess_while_loading_gives_one_access_request():
    conn = FakeConn()
    sub = conn.subscribe("test.model", True, None)
    sub.reaccess(None)
    sub.reaccess(None)
    sub.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    assert conn.access_requests == []
    assert sub.get_rpc_resources().to_dict() == {"models": {"test.model": MODEL_DICT}}
    sub.release_rpc_resources()
    assert len(conn.access_requests) == 1
    conn.access_requests[0][1](Access(get=True))
    assert sub.is_sent()
    assert sub.error() is None
    sub.event(ResourceEvent("custom", payload={"foo": "bar"}))
    assert conn.sent == [{"event": "test.model.custom", "data": {"foo": "bar"}}]


def test_reaccess_on_indirect_resource_is_discarded():
    conn = FakeConn()
    sub = conn.subscribe("test.model", False, None)
    sub.loaded(FakeResourceSub(ResourceType.MODEL, dict(MODEL)), None)
    assert sub.get_rpc_resources().to_dict() == {"models": {"test.model": MODEL_DICT}}
    sub.release_rpc_resources()
    sub.event(ResourceEvent("reaccess"))
    assert conn.access_requests == []
    assert sub.is_sent()
    sub.event(ResourceEvent("custom", payload={"foo": "bar"}))
    assert conn.sent == [{"event": "test.model.custom", "data": {"foo": "bar"}}]


def test_can_call_reports_denial_and_caches_access():
    conn = FakeConn()
    sub = Subscription(conn, "test.model")
    results = []
    sub.can_call("method", results.append)
    conn.access_requests[0][1](Access(get=True, call="foo,bar"))
    sub.can_call("foo", results.append)
    assert results == [ERR_ACCESS_DENIED, None]
    assert len(conn.access_requests) == 1


def test_disposed_subscription_error():
    conn = FakeConn()
    sub = subscribed_model(conn)
    sub.dispose()
    assert sub.error().code == "system.disposedSubscription"


def test_event_version_mismatch_discarded():
    conn = FakeConn()
    sub = subscribed_model(conn)
    sub.event(ResourceEvent("custom", payload=1, version=5))
    assert conn.sent == []