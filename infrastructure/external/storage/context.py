"""Caller-supplied cancellation and deadline for store operations."""
from __future__ import annotations

import time
from datetime import timedelta
from typing import Iterable, Optional, Union

from .exceptions import DeadlineExceededError, OperationCancelledError


class OperationContext:
    """Cancellation signal shared between a caller and a store operation.

    Stores call :meth:`check` before starting work and between the items of
    a batch or walk. Native task cancellation is independent of this and is
    never swallowed by a store.
    """

    def __init__(self, timeout: Union[float, timedelta, None] = None):
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        self.deadline: Optional[float] = (
            time.monotonic() + timeout if timeout is not None else None
        )
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self, pending: Optional[Iterable[str]] = None) -> None:
        """Raise if the caller cancelled or the deadline passed.

        Args:
            pending: Keys the interrupted operation did not get to, attached
                to the raised error as ``failed_keys``
        """
        if self._cancelled:
            raise OperationCancelledError("operation cancelled", pending)
        if self.expired:
            raise DeadlineExceededError("operation deadline exceeded", pending)


def check_context(ctx: Optional[OperationContext], pending: Optional[Iterable[str]] = None) -> None:
    if ctx is not None:
        ctx.check(pending)
