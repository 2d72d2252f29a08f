"""Retry policy and cooperative cancellation for outbound calls.

`RetryPolicy` decides *whether* and *when* to retry from the attempt number
and the error alone. `CancelToken` is the cancellation signal threaded through
a request. `call_with_retry` composes the two: every attempt and every backoff
sleep is raced against the token, so a cancel aborts in-flight work promptly.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .logging import logger

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised by `call_with_retry` when its cancel token fires."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")

    @staticmethod
    def is_transient(error: BaseException) -> bool:
        return bool(getattr(error, "transient", False))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """`attempt` is the 1-based number of the attempt that just failed."""

        return attempt < self.max_attempts and self.is_transient(error)

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1`: base, 2*base, 4*base, ..."""

        return self.base_delay_seconds * (2 ** max(0, attempt - 1))


class CancelToken:
    """One-shot cancellation signal shared between a caller and its work."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def wait_or_cancel(awaitable: Awaitable[T], cancel: CancelToken | None) -> T:
    """Await `awaitable`, aborting it with `OperationCancelled` if `cancel` fires first."""

    if cancel is None:
        return await awaitable
    if cancel.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled(cancel.reason)

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        watcher.cancel()
        raise
    if work.done():
        watcher.cancel()
        return work.result()
    work.cancel()
    with suppress(asyncio.CancelledError):
        await work
    raise OperationCancelled(cancel.reason)


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    cancel: CancelToken | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "call",
) -> T:
    """Run `call` under `policy`, honouring `cancel` during attempts and backoff.

    Non-transient errors propagate from the first failing attempt. After the
    last attempt the final error propagates unchanged.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await wait_or_cancel(call(), cancel)
        except OperationCancelled:
            logger.info("retry_cancelled", operation=operation, attempt=attempt)
            raise
        except Exception as exc:
            if not policy.should_retry(attempt, exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt,
                delay_seconds=delay,
                error_type=exc.__class__.__name__,
            )
        await wait_or_cancel(sleep(delay), cancel)
