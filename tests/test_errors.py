import pytest

from resgw.errors import (
    ERR_ACCESS_DENIED,
    ERR_DELETED,
    ERR_INVALID_NEW_RESOURCE_RESPONSE,
    ERR_INVALID_PARAMS,
    ERR_TIMEOUT,
    ResError,
    internal_error,
    res_error,
)


@pytest.mark.parametrize(
    "err, expected",
    [
        (ERR_INVALID_PARAMS, {"code": "system.invalidParams", "message": "Invalid parameters"}),
        (ERR_TIMEOUT, {"code": "system.timeout", "message": "Request timeout"}),
        (ERR_ACCESS_DENIED, {"code": "system.accessDenied", "message": "Access denied"}),
        (ResError("custom.error", "Custom error"), {"code": "custom.error", "message": "Custom error"}),
        (ERR_DELETED, {"code": "system.deleted", "message": "Deleted"}),
    ],
)
def test_to_dict_matches_protocol(err, expected):
    assert res_error(err).to_dict() == expected


def test_to_dict_includes_data_when_set():
    err = ResError("custom.error", "Custom", {"foo": 1})
    assert err.to_dict() == {"code": "custom.error", "message": "Custom", "data": {"foo": 1}}


def test_to_dict_includes_explicit_none_data():
    err = ResError("custom.error", "Custom", None)
    assert err.to_dict()["data"] is None


def test_res_error_returns_same_instance():
    err = ResError("system.custom", "Custom")
    assert res_error(err) is err


def test_res_error_wraps_unknown_error():
    result = res_error(ValueError("boom"))
    assert result.code == "system.internalError"
    assert result.message == "Internal error: boom"


def test_res_error_maps_timeout():
    assert res_error(TimeoutError()) == ERR_TIMEOUT


def test_internal_error_message():
    err = internal_error(RuntimeError("bad"))
    assert err.to_dict() == {"code": "system.internalError", "message": "Internal error: bad"}


def test_invalid_new_resource_response():
    assert res_error(ERR_INVALID_NEW_RESOURCE_RESPONSE).to_dict() == {
        "code": "system.internalError",
        "message": "Internal error: non-resource response on new request",
    }


def test_error_can_be_raised_and_caught():
    err = internal_error(RuntimeError("bad"))
    assert isinstance(err, Exception)
    assert err.code == "system.internalError"
    assert err.message == "Internal error: bad"
    with pytest.raises(ResError) as info:
        raise err
    assert info.value is err


def test_equality_by_value():
    assert ResError("a.b", "x") == ResError("a.b", "x")
    assert ResError("a.b", "x") != ResError("a.b", "y")