"""Background execution of review operations.

``BackgroundExecutor`` owns an asyncio event loop running on a worker
thread. Any thread (typically a UI thread) submits coroutines and gets a
``concurrent.futures.Future`` back; at most ``max_workers`` submitted
operations run at the same time.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..config import WorkerPoolConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutorShutdownError(RuntimeError):
    """Raised when submitting to an executor that has been shut down."""

    pass


class BackgroundExecutor:
    """Event loop thread with a bounded number of concurrent operations."""

    def __init__(self, config: Optional[WorkerPoolConfig] = None):
        self.config = config or WorkerPoolConfig()
        self.max_workers = self.config.max_workers

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._started = threading.Event()
        self._lock = threading.Lock()
        self.is_running = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        self.start()
        assert self._loop is not None
        return self._loop

    def start(self) -> None:
        """Start the loop thread."""
        with self._lock:
            if self.is_running:
                return

            self._loop = asyncio.new_event_loop()
            self._started.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name="ReviewWorker", daemon=True
            )
            self._thread.start()
            self._started.wait()
            self.is_running = True

        logger.info(f"Started background executor with {self.max_workers} workers")

    def _run_loop(self) -> None:
        assert self._loop is not None
        asyncio.set_event_loop(self._loop)
        self._semaphore = asyncio.Semaphore(self.max_workers)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            pending = asyncio.all_tasks(self._loop)
            for task in pending:
                task.cancel()
            if pending:
                self._loop.run_until_complete(
                    asyncio.gather(*pending, return_exceptions=True)
                )
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()

    def submit(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        callback: Optional[Callable[["Future[T]"], None]] = None,
        **kwargs: Any,
    ) -> "Future[T]":
        """Run ``operation(*args, **kwargs)`` on the loop thread.

        Args:
            callback: Invoked with the future when it completes (on the loop
                thread; UI code should marshal back to its own thread)

        Raises:
            ExecutorShutdownError: If the executor was shut down
        """
        if not self.is_running:
            if self._thread is not None:
                raise ExecutorShutdownError("Executor has been shut down")
            self.start()

        future = asyncio.run_coroutine_threadsafe(
            self._bounded(operation, *args, **kwargs), self.loop
        )
        if callback is not None:
            future.add_done_callback(callback)
        return future

    async def _bounded(
        self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        assert self._semaphore is not None
        async with self._semaphore:
            return await operation(*args, **kwargs)

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run a plain callable on the loop thread."""
        self.loop.call_soon_threadsafe(callback, *args)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the loop; pending operations are cancelled."""
        with self._lock:
            if not self.is_running:
                return
            self.is_running = False
            loop, thread = self._loop, self._thread

        assert loop is not None and thread is not None
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        logger.info("Background executor shut down")

    def __enter__(self) -> "BackgroundExecutor":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
