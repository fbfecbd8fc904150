"""Polling loops for watched resources.

A ``Poller`` runs an operation on a ``Ticker`` schedule, hands changed
results to a callback, backs off after failures and stops when its
``CancellationToken`` is cancelled. The ticker is injectable so tests can
drive loops one tick at a time.
"""

import asyncio
import logging
import threading
from typing import (
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Protocol,
    TypeVar,
)

from .exceptions import ReauthRequiredError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Thread-safe, one-way cancellation flag with callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


class Ticker(Protocol):
    async def wait(self, interval: float) -> None:
        """Return when the next poll is due."""
        ...


class IntervalTicker:
    """Wall-clock ticker."""

    async def wait(self, interval: float) -> None:
        await asyncio.sleep(interval)


class ManualTicker:
    """Ticker released explicitly by ``tick()``; records requested intervals."""

    def __init__(self):
        self.intervals: List[float] = []
        self._released = 0
        self._waiters = 0
        self._condition: Optional[asyncio.Condition] = None

    def _cond(self) -> asyncio.Condition:
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    async def wait(self, interval: float) -> None:
        cond = self._cond()
        async with cond:
            self.intervals.append(interval)
            self._waiters += 1
            cond.notify_all()
            try:
                await cond.wait_for(lambda: self._released > 0)
                self._released -= 1
            finally:
                self._waiters -= 1

    async def tick(self, count: int = 1) -> None:
        cond = self._cond()
        async with cond:
            self._released += count
            cond.notify_all()

    async def wait_until_waiting(self) -> None:
        """Return once a poller is parked in ``wait`` with no tick pending."""
        cond = self._cond()
        async with cond:
            await cond.wait_for(lambda: self._waiters > 0 and self._released == 0)


class Poller(Generic[T]):
    """Repeatedly runs ``operation`` until cancelled.

    Only results for which ``is_changed`` is true reach ``on_result``.
    Consecutive failures stretch the interval with exponential backoff; an
    account needing a new sign-in stops the loop.
    """

    def __init__(
        self,
        operation: Callable[[], Awaitable[T]],
        on_result: Callable[[T], None],
        interval: float,
        ticker: Optional[Ticker] = None,
        token: Optional[CancellationToken] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        is_changed: Callable[[T], bool] = bool,
        max_interval: float = 60.0,
        max_backoff_multiplier: float = 8.0,
        name: str = "poller",
    ):
        self.operation = operation
        self.on_result = on_result
        self.interval = interval
        self.ticker: Ticker = ticker or IntervalTicker()
        self.token = token or CancellationToken()
        self.on_error = on_error
        self.is_changed = is_changed
        self.max_interval = max_interval
        self.max_backoff_multiplier = max_backoff_multiplier
        self.name = name

        self.polls = 0
        self.consecutive_errors = 0
        self._task: Optional["asyncio.Task[None]"] = None

    def start(self) -> "asyncio.Task[None]":
        """Schedule ``run`` on the running loop; cancelling the token cancels it."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(self.run())
        self._task = task
        self.token.add_callback(lambda: loop.call_soon_threadsafe(task.cancel))
        return task

    def stop(self) -> None:
        self.token.cancel()

    async def run(self) -> None:
        try:
            while not self.token.is_cancelled:
                delay = await self._poll_once()
                if delay is None or self.token.is_cancelled:
                    break
                await self.ticker.wait(delay)
        except asyncio.CancelledError:
            if self.token.is_cancelled:
                logger.debug(f"{self.name} cancelled")
                return
            raise
        finally:
            logger.debug(f"{self.name} stopped after {self.polls} poll(s)")

    async def _poll_once(self) -> Optional[float]:
        self.polls += 1
        try:
            result = await self.operation()
        except ReauthRequiredError as e:
            logger.warning(f"{self.name} stopping: {e}")
            self._report(e)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.consecutive_errors += 1
            backoff = self._calculate_backoff_interval(self.consecutive_errors)
            logger.warning(
                f"{self.name} failed (attempt {self.consecutive_errors}): {e}. "
                f"Retrying in {backoff}s"
            )
            self._report(e)
            return backoff

        self.consecutive_errors = 0
        if self.token.is_cancelled:
            # Abandon results that arrive after cancellation
            return None
        if self.is_changed(result):
            self.on_result(result)
        return self.interval

    def _report(self, error: Exception) -> None:
        if self.on_error is not None:
            self.on_error(error)

    def _calculate_backoff_interval(self, attempt: int) -> float:
        """Exponential backoff: interval * 2^(attempt-1), capped."""
        multiplier = min(2 ** (attempt - 1), self.max_backoff_multiplier)
        return float(min(self.interval * multiplier, self.max_interval))
