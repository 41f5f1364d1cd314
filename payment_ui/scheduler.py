"""
Cooperative timers for the payment engine.

Every scheduler runs callbacks one at a time on a single thread, so engine
state is never touched concurrently. ``VirtualScheduler`` drives time by hand
for tests and the fast demo; ``AsyncioScheduler`` runs on a real event loop.

Blocking work such as gateway HTTP calls goes through ``call_blocking``: the
function runs off the timer thread and ``on_done`` is delivered back on it.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle returned by every scheduler; ``cancel()`` is idempotent."""

    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualScheduler:
    """Deterministic scheduler with a manually advanced clock (seconds)."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: List[tuple] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def _push(self, when: float, handle: TimerHandle, callback: Callable[[], Any], interval: Optional[float]):
        heapq.heappush(self._queue, (when, next(self._seq), handle, callback, interval))

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        handle = TimerHandle()
        self._push(self.now + delay, handle, callback, None)
        return handle

    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle:
        handle = TimerHandle()
        self._push(self.now + interval, handle, callback, interval)
        return handle

    def call_blocking(self, fn: Callable[[], Any], on_done: Optional[Callable[[Any], Any]] = None) -> None:
        """Runs inline; virtual time has no threads to hand off to."""
        _deliver(fn, on_done)

    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        # Tolerance absorbs float drift from repeated interval additions.
        while self._queue and self._queue[0][0] <= target + 1e-9:
            when, _, handle, callback, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = max(self.now, when)
            if interval is not None:
                self._push(when + interval, handle, callback, interval)
            callback()
        self.now = max(self.now, target)

    def run_until_idle(self, limit: float = 60.0) -> None:
        """Advance until no live timers remain, or ``limit`` seconds pass."""
        deadline = self.now + limit
        while self.pending() and self.now < deadline:
            live = [entry[0] for entry in self._queue if not entry[2].cancelled]
            self.advance(max(0.0, min(live) - self.now))


def _deliver(fn: Callable[[], Any], on_done: Optional[Callable[[Any], Any]]) -> None:
    try:
        result = fn()
    except Exception as e:
        logger.warning("Blocking call %s failed: %s", getattr(fn, "__name__", fn), e)
        return
    if on_done is not None:
        on_done(result)


class _LoopHandle(TimerHandle):
    def __init__(self):
        super().__init__()
        self.inner: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        super().cancel()
        if self.inner is not None:
            self.inner.cancel()


class AsyncioScheduler:
    """Timers on an asyncio event loop. Must be used from the loop's thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop, executor: Optional[Executor] = None):
        self.loop = loop
        self.executor = executor

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        handle = _LoopHandle()

        def fire():
            if not handle.cancelled:
                callback()

        handle.inner = self.loop.call_later(delay, fire)
        return handle

    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle:
        handle = _LoopHandle()

        def fire():
            if handle.cancelled:
                return
            # Re-arm first so the callback can cancel its own handle.
            handle.inner = self.loop.call_later(interval, fire)
            callback()

        handle.inner = self.loop.call_later(interval, fire)
        return handle

    def call_blocking(self, fn: Callable[[], Any], on_done: Optional[Callable[[Any], Any]] = None) -> None:
        """Run ``fn`` on the executor; ``on_done`` fires back on the loop thread."""
        results = []

        def work():
            _deliver(fn, results.append)

        def finished(future):
            if not future.cancelled() and results and on_done is not None:
                on_done(results[0])

        try:
            future = self.loop.run_in_executor(self.executor, work)
        except RuntimeError as e:
            logger.warning("Executor unavailable, dropping blocking call: %s", e)
            return
        future.add_done_callback(finished)


class BackgroundLoop:
    """
    Owns an asyncio loop on a daemon thread. Request threads hand work to it
    with ``call`` so the engine only ever runs on the loop thread.
    """

    def __init__(self, name: str = "payment-engine", io_workers: int = 4):
        self.loop = asyncio.new_event_loop()
        self.executor = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix=f"{name}-io")
        self.scheduler = AsyncioScheduler(self.loop, self.executor)
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = False

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "BackgroundLoop":
        if not self._started:
            self._thread.start()
            self._started = True
            logger.info("Background event loop started (%s)", self._thread.name)
        return self

    def call(self, fn: Callable[..., Any], *args, timeout: float = 10.0, **kwargs) -> Any:
        async def invoke():
            return fn(*args, **kwargs)

        future = asyncio.run_coroutine_threadsafe(invoke(), self.loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self._started:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)
            self._started = False
        self.executor.shutdown(wait=False)


class InlineRunner:
    """Runs calls on the caller's thread; pairs with ``VirtualScheduler``."""

    def __init__(self, scheduler: Optional[VirtualScheduler] = None):
        self.scheduler = scheduler or VirtualScheduler()

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        kwargs.pop("timeout", None)
        return fn(*args, **kwargs)
