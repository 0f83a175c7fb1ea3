"""Pending handles -- oneshot futures keyed by an opaque id.

A handle is created when the loop needs an answer from the user (tool
confirmation, iteration-limit prompt) and resolved exactly once by the
matching external response. Waiting always races the task's cancel
signal so a suspended task can still be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

from tabagent.api.errors import TaskCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PendingRegistry(Generic[T]):
    """Map of id -> unresolved future."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._pending: dict[str, asyncio.Future[T]] = {}

    def create(self, key: str | None = None) -> tuple[str, asyncio.Future[T]]:
        """Create a handle. A generated uuid hex is used when no key is given."""
        key = key or uuid.uuid4().hex
        if key in self._pending:
            raise ValueError(f"{self.name}: handle {key} already pending")
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        return key, future

    def resolve(self, key: str, value: T) -> bool:
        """Resolve a handle. Returns False for unknown or already-resolved ids."""
        future = self._pending.pop(key, None)
        if future is None or future.done():
            logger.warning("%s: no pending handle for %s", self.name, key)
            return False
        future.set_result(value)
        return True

    def discard(self, key: str) -> None:
        future = self._pending.pop(key, None)
        if future is not None and not future.done():
            future.cancel()

    def cancel_all(self) -> int:
        """Cancel every pending handle (tab closed). Returns how many were dropped."""
        count = 0
        for key in list(self._pending):
            self.discard(key)
            count += 1
        return count

    def __contains__(self, key: object) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def wait(
        self,
        key: str,
        future: asyncio.Future[T],
        cancel_event: asyncio.Event,
        tab_id: str | None = None,
    ) -> T:
        """Suspend until the handle resolves or the cancel signal is set."""
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({future, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()

        if future.done() and not future.cancelled():
            return future.result()
        self.discard(key)
        raise TaskCancelled(tab_id)


async def wait_or_cancel(awaitable: Any, cancel_event: asyncio.Event, tab_id: str | None = None) -> Any:
    """Await a coroutine, abandoning it when the cancel signal is set first."""
    task = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_waiter.cancel()
    if task.done():
        return task.result()
    # The underlying action keeps running; only its result is dropped.
    task.add_done_callback(_drop_result)
    raise TaskCancelled(tab_id)


async def iterate_or_cancel(
    iterator: AsyncIterator[T], cancel_event: asyncio.Event, tab_id: str | None = None
) -> AsyncIterator[T]:
    """Yield from an async iterator, aborting the pending read on cancel.

    Unlike wait_or_cancel, the read is cancelled rather than abandoned,
    so a stalled stream is torn down as soon as the signal is set.
    """
    while True:
        step = asyncio.ensure_future(_next(iterator))
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({step, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
            if not step.done():
                step.cancel()
                await asyncio.wait({step})
        if step.cancelled():
            raise TaskCancelled(tab_id)
        try:
            item = step.result()
        except StopAsyncIteration:
            return
        yield item


async def _next(iterator: AsyncIterator[T]) -> T:
    return await iterator.__anext__()


def _drop_result(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded failure of abandoned action: %s", task.exception())
