"""In-flight request de-duplication.

Callers asking for the same key while a computation is pending share its
result instead of starting another. Each entry counts its waiters and is
released deterministically: when the computation finishes (result or
error), or when every waiter has been cancelled, in which case the
computation itself is cancelled too.
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Iterable
from typing import Generic, TypeVar

from yieldlens.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class _Call(Generic[T]):
    __slots__ = ("task", "waiters")

    def __init__(self, task: "asyncio.Task[T]") -> None:
        self.task = task
        self.waiters = 0


def snapshot_key(wallet: str, pool_ids: Iterable[str]) -> tuple[str, tuple[str, ...]]:
    """(wallet, sorted distinct pool ids): the de-duplication key of a snapshot request."""
    return wallet, tuple(sorted(set(pool_ids)))


class SingleFlight(Generic[T]):
    """Key -> shared awaitable handle with reference counting."""

    def __init__(self) -> None:
        self._calls: dict[Hashable, _Call[T]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def waiters(self, key: Hashable) -> int:
        call = self._calls.get(key)
        return call.waiters if call is not None else 0

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``key`` unless a run is already pending, then await the shared result."""
        call = self._calls.get(key)
        if call is None:
            call = _Call(asyncio.ensure_future(fn()))
            self._calls[key] = call
            call.task.add_done_callback(lambda task, c=call: self._on_done(key, c, task))
        else:
            logger.debug("singleflight_joined", key=str(key))

        call.waiters += 1
        try:
            return await asyncio.shield(call.task)
        finally:
            call.waiters -= 1
            if call.waiters == 0 and not call.task.done():
                # every waiter went away
                call.task.cancel()
                self._release(key, call)

    def _on_done(self, key: Hashable, call: _Call[T], task: "asyncio.Task[T]") -> None:
        if not task.cancelled() and task.exception() is not None and call.waiters == 0:
            logger.debug("singleflight_unobserved_failure", key=str(key))
        self._release(key, call)

    def _release(self, key: Hashable, call: _Call[T]) -> None:
        if self._calls.get(key) is call:
            del self._calls[key]
