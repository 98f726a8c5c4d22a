"""Typed result for state machine transitions."""

from dataclasses import dataclass
from typing import Generic, TypeVar

from podcaster.core.errors import InvalidJobTransition, InvalidTransition

T = TypeVar("T")


@dataclass(frozen=True)
class TransitionOutcome(Generic[T]):
    """Either the new value or the guard violation that prevented it.

    ``value`` is always populated: on failure it is the original, unchanged
    value, so callers can keep working with it.
    """

    value: T
    error: InvalidTransition | InvalidJobTransition | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
