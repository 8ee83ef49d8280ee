"""Origin header checks for incoming WebSocket connections."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from urllib.parse import urlsplit


def parse_allow_origin(allow_origin: str | None) -> list[str]:
    """Split a semicolon separated allow-origin setting into a list.

    None means any origin. Raises ValueError on an invalid setting.
    """
    if allow_origin is None:
        return ["*"]
    origins = allow_origin.split(";")
    if "*" in origins:
        if len(origins) > 1:
            raise ValueError("invalid allowOrigin: '*' must be used alone")
        return ["*"]
    for origin in origins:
        parts = urlsplit(origin)
        if (
            not parts.scheme
            or not parts.netloc
            or parts.path
            or parts.query
            or parts.fragment
            or "@" in parts.netloc
        ):
            raise ValueError(f"invalid allowOrigin origin: {origin!r}")
    return origins


def matches_origins(origins: Sequence[str], origin: str) -> bool:
    """Tell whether origin equals one of origins, ignoring ASCII case."""
    lowered = origin.lower()
    return any(candidate.lower() == lowered for candidate in origins)


def origin_checker(allow_origin: str | Sequence[str] | None) -> Callable[[str | None], bool]:
    """Return a predicate for the Origin header value of a request.

    The predicate takes the header value, or None when the header is missing.
    """
    if allow_origin is None or isinstance(allow_origin, str):
        origins = parse_allow_origin(allow_origin)
    else:
        origins = list(allow_origin)

    if origins and origins[0] == "*":
        return lambda origin: True

    def check(origin: str | None) -> bool:
        if origin is None or origin == "null":
            return True
        return matches_origins(origins, origin)

    return check