"""Completion handles: the single result an application awaits per phase."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generator, Generic, List, Optional, Tuple, TypeVar

from .errors import HandleSettledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[Any], Any]
Errback = Callable[[BaseException], Any]

_PENDING = "pending"
_RESOLVED = "resolved"
_FAILED = "failed"


@dataclass
class Outcome:
    """Faults raised by continuations while a handle was being settled."""

    faults: List[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.faults

    @property
    def fault(self) -> Optional[Exception]:
        return self.faults[0] if self.faults else None


class CompletionHandle(Generic[T]):
    """
    Settles exactly once, either resolved with a value or failed with an error.

    Continuations added with :meth:`then` run synchronously inside
    :meth:`resolve` / :meth:`fail`. A continuation that raises does not
    propagate; the fault is reported in the returned :class:`Outcome` so the
    settling side can decide what it means. Awaiting the handle returns the
    value or raises the failure.
    """

    def __init__(self, label: str = "operation") -> None:
        self.label = label
        self._status = _PENDING
        self._value: Optional[T] = None
        self._error: Optional[BaseException] = None
        self._continuations: List[Tuple[Optional[Callback], Optional[Errback]]] = []
        self._waiters: List[asyncio.Future[None]] = []

    @classmethod
    def succeeded(cls, value: Any = None, label: str = "operation") -> "CompletionHandle[Any]":
        handle: CompletionHandle[Any] = cls(label)
        handle.resolve(value)
        return handle

    def __repr__(self) -> str:
        return f"<CompletionHandle {self.label} {self._status}>"

    def done(self) -> bool:
        return self._status != _PENDING

    def result(self) -> Optional[T]:
        if self._status == _PENDING:
            raise asyncio.InvalidStateError(f"{self.label} handle is not settled yet")
        if self._status == _FAILED:
            assert self._error is not None
            raise self._error
        return self._value

    def exception(self) -> Optional[BaseException]:
        if self._status == _PENDING:
            raise asyncio.InvalidStateError(f"{self.label} handle is not settled yet")
        return self._error

    def then(self, callback: Optional[Callback] = None, errback: Optional[Errback] = None) -> "CompletionHandle[T]":
        """Register continuations; they run at once if the handle already settled."""
        if self._status == _PENDING:
            self._continuations.append((callback, errback))
            return self
        fault = self._run(callback, errback)
        if fault is not None:
            raise fault
        return self

    def resolve(self, value: Optional[T] = None) -> Outcome:
        return self._settle(_RESOLVED, value, None)

    def fail(self, error: BaseException) -> Outcome:
        return self._settle(_FAILED, None, error)

    def _settle(self, status: str, value: Optional[T], error: Optional[BaseException]) -> Outcome:
        if self._status != _PENDING:
            raise HandleSettledError(f"{self.label} handle already {self._status}")
        self._status = status
        self._value = value
        self._error = error

        outcome = Outcome()
        continuations, self._continuations = self._continuations, []
        for callback, errback in continuations:
            fault = self._run(callback, errback)
            if fault is not None:
                outcome.faults.append(fault)

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        return outcome

    def _run(self, callback: Optional[Callback], errback: Optional[Errback]) -> Optional[Exception]:
        try:
            if self._status == _RESOLVED:
                if callback is not None:
                    callback(self._value)
            elif errback is not None:
                errback(self._error)  # type: ignore[arg-type]
        except Exception as exc:
            logger.debug("%s continuation raised %r", self.label, exc)
            return exc
        return None

    def __await__(self) -> Generator[Any, None, Optional[T]]:
        if self._status == _PENDING:
            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            yield from waiter.__await__()
        return self.result()


__all__ = ["CompletionHandle", "Outcome"]
