"""Handler result types.

Handlers report their outcome explicitly instead of relying only on
exceptions, so the consumer's retry/dead-letter branch is a visible decision:

>>> async def handle(delivery):
...     if delivery.payload.get("amount", 0) <= 0:
...         return Failure("non-positive amount", retryable=False)
...     return Success()

Raising is still supported; a raised exception is treated as a retryable
``Failure``. Returning ``None`` (or any non-result value) counts as success.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Success:
    value: Any = None


@dataclass(frozen=True)
class Failure:
    error: Union[BaseException, str, None] = None
    retryable: bool = True

    @property
    def error_type(self) -> str:
        if isinstance(self.error, BaseException):
            return self.error.__class__.__name__
        return "Failure"

    @property
    def reason(self) -> str:
        if self.error is None:
            return "handler reported failure"
        if isinstance(self.error, BaseException):
            return f"{self.error.__class__.__name__}: {self.error}"
        return str(self.error)


HandlerResult = Union[Success, Failure]


def as_result(value: Any) -> HandlerResult:
    """Normalize a handler's return value into a ``HandlerResult``."""
    if isinstance(value, (Success, Failure)):
        return value
    return Success(value)
