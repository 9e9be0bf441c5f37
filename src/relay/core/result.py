from __future__ import annotations
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import RelayError

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Success branch of a Result."""
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failure branch of a Result. Carries the error instead of raising it."""
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


# Cross-component calls return one of the two branches, never both, never neither.
Result = Union[Ok[T], Err[RelayError]]
