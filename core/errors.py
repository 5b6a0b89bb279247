"""
core/errors.py -- Closed error taxonomy shared by every layer.

Every failure that can reach a caller is one of six kinds. Each kind maps to
exactly one HTTP status, so the route layer never has to guess a status from
an exception message.

  BAD_REQUEST   400  malformed input (e.g. invalid email format)
  UNAUTHORIZED  401  missing/invalid/expired credential or token, refresh reuse
  FORBIDDEN     403  valid token, insufficient permission
  NOT_FOUND     404  missing entity
  CONFLICT      409  duplicate unique key on create
  INTERNAL      500  storage/cache/crypto failure not caused by the caller

AppError carries a non-empty list of ErrorDetail records. Several records may
travel together -- typically the precise repository error first, followed by
a generic internal marker added by the orchestration layer. The first record
decides the outer HTTP status.

Layer rule: core/ is the kernel. No imports from api/, auth/, cache/, rbac/.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"


_STATUS: dict[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}

_DEFAULT_TITLE: dict[ErrorKind, str] = {
    ErrorKind.BAD_REQUEST: "Bad Request",
    ErrorKind.UNAUTHORIZED: "Unauthorized",
    ErrorKind.FORBIDDEN: "Forbidden",
    ErrorKind.NOT_FOUND: "Not Found",
    ErrorKind.CONFLICT: "Conflict",
    ErrorKind.INTERNAL: "Internal Server Error",
}


@dataclass(frozen=True)
class ErrorDetail:
    """One machine-readable error record.

    source is "<module>.<function>:<line>" of the code that created the
    record. It is diagnostic only; clients must branch on kind/code.
    """

    kind: ErrorKind
    title: str
    message: str
    source: str = "unknown"

    @property
    def code(self) -> int:
        return _STATUS[self.kind]

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "source": self.source,
            "title": self.title,
            "message": self.message,
        }


class AppError(Exception):
    """Raised by repositories and services; rendered by the API layer."""

    def __init__(self, errors: list[ErrorDetail]) -> None:
        if not errors:
            raise ValueError("AppError requires at least one ErrorDetail")
        self.errors = list(errors)
        super().__init__("; ".join(f"{e.title}: {e.message}" for e in self.errors))

    @property
    def kind(self) -> ErrorKind:
        return self.errors[0].kind

    @property
    def status_code(self) -> int:
        return self.errors[0].code

    def with_internal(self, message: str) -> AppError:
        """Return a copy with a generic internal marker appended.

        The precise cause stays first so the outer status is unchanged.
        """
        marker = ErrorDetail(
            kind=ErrorKind.INTERNAL,
            title=_DEFAULT_TITLE[ErrorKind.INTERNAL],
            message=message,
            source=_where_am_i(),
        )
        return AppError([*self.errors, marker])


def _where_am_i(depth: int = 2) -> str:
    """Return "<module>.<function>:<line>" for the frame `depth` levels up."""
    try:
        frame = sys._getframe(depth)
    except ValueError:
        return "unknown"
    module = frame.f_globals.get("__name__", "?")
    return f"{module}.{frame.f_code.co_name}:{frame.f_lineno}"


def make_error(kind: ErrorKind, message: str, title: str | None = None) -> AppError:
    """Build a single-record AppError attributed to the caller's caller."""
    detail = ErrorDetail(
        kind=kind,
        title=title or _DEFAULT_TITLE[kind],
        message=message,
        source=_where_am_i(3),
    )
    return AppError([detail])


# Convenience constructors -- one per taxonomy entry. The caller's frame is
# recorded as the error source.


def bad_request(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.BAD_REQUEST, message, title)


def unauthorized(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.UNAUTHORIZED, message, title)


def forbidden(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.FORBIDDEN, message, title)


def not_found(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.NOT_FOUND, message, title)


def conflict(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.CONFLICT, message, title)


def internal_error(message: str, title: str | None = None) -> AppError:
    return make_error(ErrorKind.INTERNAL, message, title)
