import asyncio
import threading
from typing import Any, Awaitable, Callable, List, TypeVar

T = TypeVar("T")


class CancellationToken:
    """Explicit cancellation signal threaded through every suspending call.

    Cancelling is thread-safe. Waiters are woken on the event loop they are
    waiting on and unwind with `asyncio.CancelledError`.
    """

    def __init__(self, can_be_cancelled: bool = True):
        self._can_be_cancelled = can_be_cancelled
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @classmethod
    def none(cls) -> "CancellationToken":
        return cls(can_be_cancelled=False)

    @property
    def can_be_cancelled(self) -> bool:
        return self._can_be_cancelled

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._can_be_cancelled:
            raise RuntimeError("This token cannot be cancelled")
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def raise_if_cancellation_requested(self) -> None:
        if self._cancelled.is_set():
            raise asyncio.CancelledError("Cancellation was requested")

    def _register(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    async def sleep(self, delay: float) -> None:
        """Wait for `delay` seconds unless cancellation is requested first"""
        self.raise_if_cancellation_requested()
        if not self._can_be_cancelled:
            await asyncio.sleep(delay)
            return

        loop = asyncio.get_running_loop()
        woken = loop.create_future()

        unregister = self._register(lambda: _call_soon(loop, _set_done, woken))
        try:
            await asyncio.wait_for(woken, timeout=delay)
        except asyncio.TimeoutError:
            return
        finally:
            unregister()
        self.raise_if_cancellation_requested()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Awaits `awaitable`, cancelling it as soon as cancellation is requested"""
        if self._cancelled.is_set():
            _close(awaitable)
            self.raise_if_cancellation_requested()
        if not self._can_be_cancelled:
            return await awaitable

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)

        unregister = self._register(lambda: _call_soon(loop, task.cancel))
        try:
            return await task
        except asyncio.CancelledError:
            self.raise_if_cancellation_requested()
            raise
        finally:
            unregister()


def _call_soon(loop: asyncio.AbstractEventLoop, callback: Callable[..., Any], *args: Any) -> None:
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        # The waiter's loop has already closed.
        if not loop.is_closed():
            raise


def _set_done(future: "asyncio.Future[None]") -> None:
    if not future.done():
        future.set_result(None)


def _close(awaitable: Awaitable[Any]) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
