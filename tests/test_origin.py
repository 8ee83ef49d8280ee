import pytest

from resgw.origin import matches_origins, origin_checker, parse_allow_origin


@pytest.mark.parametrize(
    "origin, allow_origin, expected",
    [
        ("http://localhost", "*", True),
        ("http://localhost", "http://localhost", True),
        ("http://localhost:8080", "http://localhost:8080", True),
        ("http://localhost", "http://localhost;https://resgate.io", True),
        ("https://resgate.io", "http://localhost;https://resgate.io", True),
        (None, "*", True),
        (None, "https://resgate.io", True),
        ("http://resgate.io", "https://resgate.io", False),
        ("https://resgate.io", "https://api.resgate.io", False),
        ("https://resgate.io:8080", "https://resgate.io", False),
        ("https://resgate.io", "https://resgate.io:8080", False),
    ],
)
def test_origin_checker_connect_cases(origin, allow_origin, expected):
    assert origin_checker(allow_origin)(origin) is expected


def test_null_origin_is_allowed():
    assert origin_checker("https://resgate.io")("null") is True


def test_checker_accepts_list():
    check = origin_checker(["http://localhost", "https://resgate.io"])
    assert check("https://resgate.io") is True
    assert check("http://example.com") is False


def test_none_setting_allows_everything():
    assert origin_checker(None)("http://example.com") is True


def test_parse_allow_origin_splits():
    assert parse_allow_origin("http://localhost;https://resgate.io") == [
        "http://localhost",
        "https://resgate.io",
    ]


def test_parse_allow_origin_default():
    assert parse_allow_origin(None) == ["*"]
    assert parse_allow_origin("*") == ["*"]


@pytest.mark.parametrize(
    "setting",
    ["*;http://localhost", "", "localhost", "http://localhost/path", "http://localhost?q=1"],
)
def test_parse_allow_origin_rejects_invalid(setting):
    with pytest.raises(ValueError):
        parse_allow_origin(setting)


def test_matches_origins_ignores_case():
    assert matches_origins(["http://LocalHost"], "http://localhost") is True
    assert matches_origins(["http://localhost"], "http://localhost:80") is False
    assert matches_origins([], "http://localhost") is False