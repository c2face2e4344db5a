"""
Campaign Orchestrator — Operation Results

Every engine operation returns Ok(value) or Err(kind, detail) instead of
raising for expected outcomes (unknown id, illegal transition, duplicate
campaign). Store failures are the exception: they raise PersistenceError
so callers can retry the whole operation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from engine.db import PersistenceError

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    PERSISTENCE = "persistence"


class DuplicateActiveOperation(PersistenceError):
    """The store refused a second active operation for one target."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise ValueError(f"{self.kind.value}: {self.detail}")


Result = Union[Ok[T], Err]


def not_found(detail: str) -> Err:
    return Err(ErrorKind.NOT_FOUND, detail)


def invalid_state(detail: str) -> Err:
    return Err(ErrorKind.INVALID_STATE, detail)


def conflict(detail: str) -> Err:
    return Err(ErrorKind.CONFLICT, detail)


__all__ = [
    "Ok", "Err", "Result", "ErrorKind",
    "PersistenceError", "DuplicateActiveOperation",
    "not_found", "invalid_state", "conflict",
]
