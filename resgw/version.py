"""Protocol version numbers and parsing."""

from __future__ import annotations

import re
from typing import Any

from .errors import ERR_INVALID_PARAMS, ERR_UNSUPPORTED_PROTOCOL

# MAJOR * 1000000 + MINOR * 1000 + PATCH
VERSION_LATEST = 1002002
VERSION_LEGACY = 1001001

VERSION_CALL_RESOURCE_RESPONSE = 1002000
VERSION_SOFT_RESOURCE_REFERENCE_AND_DATA_VALUE = 1002001

_PART = re.compile(r"[+-]?[0-9]+")


def format_protocol_version(version: int) -> str:
    """Format a numeric protocol version as MAJOR.MINOR.PATCH."""
    major, rest = divmod(version, 1_000_000)
    minor, patch = divmod(rest, 1000)
    return f"{major}.{minor}.{patch}"


PROTOCOL_VERSION = format_protocol_version(VERSION_LATEST)


def parse_protocol_version(protocol: Any) -> int | None:
    """Parse a client protocol version string into its numeric form.

    Returns None for an empty or missing version. Raises ERR_INVALID_PARAMS
    for a malformed version, and ERR_UNSUPPORTED_PROTOCOL for a version
    outside major version 1.
    """
    if protocol is None or protocol == "":
        return None
    if not isinstance(protocol, str):
        raise ERR_INVALID_PARAMS

    parts = protocol.split(".")
    if len(parts) != 3:
        raise ERR_INVALID_PARAMS

    version = 0
    for part in parts:
        if not _PART.fullmatch(part):
            raise ERR_INVALID_PARAMS
        value = int(part)
        if value >= 1000:
            raise ERR_INVALID_PARAMS
        version = version * 1000 + value

    if not 1_000_000 <= version < 2_000_000:
        raise ERR_UNSUPPORTED_PROTOCOL
    return version