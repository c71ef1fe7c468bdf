import asyncio
import inspect
from typing import Awaitable, TypeVar

from simsync.errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """
    Cancellation handle for one batch operation.

    Every network call and retry sleep made on behalf of the operation is run
    through ``guard``; ``cancel`` aborts whatever is in flight and makes every
    later ``guard`` call fail fast with ``OperationCancelled``.
    """

    def __init__(self):
        self._cancelled = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self._cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled()

        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            # Only our own cancel() is translated; an outer cancellation keeps propagating.
            if self._cancelled and task.cancelled():
                raise OperationCancelled() from None
            raise
        finally:
            self._tasks.discard(task)

    async def sleep(self, delay: float) -> None:
        await self.guard(asyncio.sleep(delay))
