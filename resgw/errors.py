"""Errors that are reported to clients as RES protocol error objects."""

from __future__ import annotations

from typing import Any

CODE_ACCESS_DENIED = "system.accessDenied"
CODE_INTERNAL_ERROR = "system.internalError"
CODE_INVALID_PARAMS = "system.invalidParams"
CODE_NOT_FOUND = "system.notFound"
CODE_TIMEOUT = "system.timeout"
CODE_UNSUPPORTED_PROTOCOL = "system.unsupportedProtocol"
CODE_DISPOSING = "system.disposing"
CODE_DELETED = "system.deleted"
CODE_SUBJECT_TOO_LONG = "system.subjectTooLong"
CODE_SUBSCRIPTION_LIMIT_EXCEEDED = "system.subscriptionLimitExceeded"
CODE_DISPOSED_SUBSCRIPTION = "system.disposedSubscription"

_UNSET = object()


class ResError(Exception):
    """An error with a code, a message and optional data."""

    def __init__(self, code: str, message: str, data: Any = _UNSET) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @property
    def has_data(self) -> bool:
        return self.data is not _UNSET

    def to_dict(self) -> dict[str, Any]:
        """Return the error as a JSON-ready dictionary."""
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.has_data:
            out["data"] = self.data
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResError):
            return NotImplemented
        return (
            self.code == other.code
            and self.message == other.message
            and self.data == other.data
        )

    def __hash__(self) -> int:
        return hash((self.code, self.message))

    def __repr__(self) -> str:
        return f"ResError({self.code!r}, {self.message!r})"

    def __str__(self) -> str:
        return self.message


ERR_ACCESS_DENIED = ResError(CODE_ACCESS_DENIED, "Access denied")
ERR_INTERNAL_ERROR = ResError(CODE_INTERNAL_ERROR, "Internal error")
ERR_INVALID_PARAMS = ResError(CODE_INVALID_PARAMS, "Invalid parameters")
ERR_NOT_FOUND = ResError(CODE_NOT_FOUND, "Not found")
ERR_TIMEOUT = ResError(CODE_TIMEOUT, "Request timeout")
ERR_UNSUPPORTED_PROTOCOL = ResError(CODE_UNSUPPORTED_PROTOCOL, "Unsupported protocol")
ERR_DISPOSING = ResError(CODE_DISPOSING, "Disposing")
ERR_DELETED = ResError(CODE_DELETED, "Deleted")
ERR_SUBJECT_TOO_LONG = ResError(CODE_SUBJECT_TOO_LONG, "Subject too long")
ERR_SUBSCRIPTION_LIMIT_EXCEEDED = ResError(
    CODE_SUBSCRIPTION_LIMIT_EXCEEDED, "Subscription limit exceeded"
)
ERR_DISPOSED_SUBSCRIPTION = ResError(
    CODE_DISPOSED_SUBSCRIPTION, "Resource subscription is disposed"
)


def internal_error(err: BaseException | str) -> ResError:
    """Wrap an arbitrary error as an internal error."""
    return ResError(CODE_INTERNAL_ERROR, f"Internal error: {err}")


def res_error(err: BaseException) -> ResError:
    """Convert any error to a ResError; unknown errors become internal errors."""
    if isinstance(err, ResError):
        return err
    if isinstance(err, TimeoutError):
        return ERR_TIMEOUT
    return internal_error(err)


ERR_INVALID_NEW_RESOURCE_RESPONSE = internal_error("non-resource response on new request")