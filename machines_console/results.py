"""Tagged results returned by every SDK operation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Generic, TypeVar, Union

T = TypeVar("T")
D = TypeVar("D")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True

    def unwrap_or(self, default: Any) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    status: int | None = None
    details: Any = None
    ok: ClassVar[bool] = False

    def unwrap_or(self, default: D) -> D:
        return default


Result = Union[Ok[T], Err]


def error_kind_for_status(status: int) -> ErrorKind:
    if status in (400, 422):
        return ErrorKind.VALIDATION
    if status in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status == 404:
        return ErrorKind.NOT_FOUND
    return ErrorKind.UPSTREAM
