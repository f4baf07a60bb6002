"""
Tagged outcome variants for structured-generation phases.

Every parse of model output resolves to exactly one of ``Parsed`` (model
output accepted), ``Fallback`` (deterministic substitute used) or ``Failed``
(nothing usable). Callers match on the variant instead of probing optional
fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback(Generic[T]):
    value: T
    reason: str


@dataclass(frozen=True)
class Failed:
    reason: str


Outcome = Union[Parsed[T], Fallback[T], Failed]


def unwrap(outcome: "Outcome[T]") -> T:
    """Return the carried value, raising ``ValueError`` for ``Failed``."""
    if isinstance(outcome, (Parsed, Fallback)):
        return outcome.value
    raise ValueError(outcome.reason)


__all__ = ["Failed", "Fallback", "Outcome", "Parsed", "unwrap"]
