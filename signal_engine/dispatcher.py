"""Request dispatcher: serialize outbound exchange calls with a minimum spacing.

The exchange enforces a fixed requests-per-second ceiling. Every outbound
call is queued here and dispatched one at a time, FIFO, with at least
``min_interval`` seconds between the *start* of consecutive calls.
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from .logging_setup import logger


class DispatcherClosed(RuntimeError):
    """Raised for requests still queued when the dispatcher is closed."""
    pass


@dataclass
class QueuedRequest:
    """A deferred exchange call and the future its caller is awaiting."""
    call: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"


class RequestDispatcher:
    """FIFO, rate-spaced executor for zero-argument async calls.

    Usage:
        dispatcher = RequestDispatcher(min_interval=0.1)
        result = await dispatcher.enqueue(lambda: session.get(url))
    """

    def __init__(self, min_interval: float = 0.1):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._queue: Deque[QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._last_dispatch: Optional[float] = None

    @property
    def pending(self) -> int:
        """Number of calls waiting to be dispatched."""
        return len(self._queue)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def last_dispatch(self) -> Optional[float]:
        """Monotonic timestamp of the most recent dispatch start."""
        return self._last_dispatch

    async def enqueue(self, call: Callable[[], Awaitable[Any]]) -> Any:
        """Queue ``call`` and return its result (or raise its exception)."""
        loop = asyncio.get_running_loop()
        request = QueuedRequest(call=call, future=loop.create_future())
        self._queue.append(request)

        if not self.is_draining:
            self._drain_task = loop.create_task(self._drain())

        return await request.future

    def time_until_allowed(self) -> float:
        """Seconds until the next dispatch may start. 0 if allowed now."""
        if self._last_dispatch is None:
            return 0.0
        elapsed = time.monotonic() - self._last_dispatch
        return max(0.0, self.min_interval - elapsed)

    async def _drain(self) -> None:
        while self._queue:
            wait = self.time_until_allowed()
            if wait > 0:
                await asyncio.sleep(wait)

            request = self._queue.popleft()
            if request.future.done():
                # caller went away (cancelled) while queued
                continue

            self._last_dispatch = time.monotonic()
            try:
                result = await request.call()
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as e:
                if not request.future.done():
                    request.future.set_exception(e)
                logger.debug(f"Dispatched call failed | error={e!r} pending={len(self._queue)}")
            else:
                if not request.future.done():
                    request.future.set_result(result)

    async def close(self) -> None:
        """Stop draining and fail every call still queued."""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(DispatcherClosed("Dispatcher closed with request pending"))
