# historia/memory/result.py
"""
Result values returned by the persistence gateway.

The gateway never raises to its callers; each call returns either
Ok(value) or Err(kind, detail) so the caller decides in one place
whether a failure is logged and swallowed or surfaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


class StoreErrorKind(str, Enum):
    AUTH_REQUIRED = "auth_required"
    NOT_FOUND = "not_found"
    STORE_FAILURE = "store_failure"
    SEARCH_UNAVAILABLE = "search_unavailable"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: StoreErrorKind
    detail: str = ""
    cause: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return False

    def unwrap_or(self, default: T) -> T:
        return default


Result = Union[Ok[T], Err]
