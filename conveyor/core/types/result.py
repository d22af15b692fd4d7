# conveyor/core/types/result.py
"""
Minimal Ok/Err result container for operations whose failures callers are
expected to branch on (storage calls, admission decisions, envelope parsing).

Exceptions remain the mechanism for programming errors and for process-level
failures; ``Result`` is for expected operational outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Never, TypeGuard


@dataclass(slots=True, frozen=True)
class Ok[T]:
    ok_value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.ok_value

    def unwrap_err(self) -> Never:
        raise RuntimeError(f'called unwrap_err() on Ok: {self.ok_value!r}')


@dataclass(slots=True, frozen=True)
class Err[E]:
    err_value: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Never:
        raise RuntimeError(f'called unwrap() on Err: {self.err_value!r}')

    def unwrap_err(self) -> E:
        return self.err_value


type Result[T, E] = Ok[T] | Err[E]


def is_ok(result: Ok[Any] | Err[Any]) -> TypeGuard[Ok[Any]]:
    return isinstance(result, Ok)


def is_err(result: Ok[Any] | Err[Any]) -> TypeGuard[Err[Any]]:
    return isinstance(result, Err)
