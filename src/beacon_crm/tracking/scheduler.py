"""Cooperative schedulers for the tracking client.

The client never spawns threads of its own: every timer callback and every
network completion is delivered on one loop, so buffers and queues are only
ever touched from that loop.
"""

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

IoCallback = Callable[[Any, Optional[BaseException]], None]


class Scheduler:
    """Interface shared by the asyncio-backed and manual schedulers."""

    def now(self) -> float:
        """Monotonic seconds."""
        raise NotImplementedError

    def wall_time(self) -> datetime:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Any:
        raise NotImplementedError

    def cancel(self, handle: Any):
        raise NotImplementedError

    def run_io(self, fn: Callable[[], Any], on_done: IoCallback):
        """Run blocking ``fn`` off-loop and report back on the loop."""
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop; I/O runs in the default executor."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        # Without an explicit loop this must be constructed inside a running loop
        self.loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time()

    def wall_time(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), _guarded(callback))

    def cancel(self, handle: Any):
        if handle is not None:
            handle.cancel()

    def run_io(self, fn: Callable[[], Any], on_done: IoCallback):
        future = self.loop.run_in_executor(None, fn)

        def _complete(fut: "asyncio.Future"):
            if fut.cancelled():
                on_done(None, asyncio.CancelledError())
                return
            error = fut.exception()
            on_done(None if error else fut.result(), error)

        future.add_done_callback(_guarded_done(_complete))


class _ManualHandle:
    __slots__ = ("when", "seq", "callback", "cancelled")

    def __init__(self, when: float, seq: int, callback: Callable[[], Any]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def __lt__(self, other: "_ManualHandle") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class ManualScheduler(Scheduler):
    """Deterministic scheduler driven by an explicit clock.

    ``run_io`` executes the work immediately and queues the completion as a
    zero-delay callback, mirroring how a real loop resumes after I/O.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._time = 0.0
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._queue: List[_ManualHandle] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._time

    def wall_time(self) -> datetime:
        return self._start + timedelta(seconds=self._time)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> _ManualHandle:
        handle = _ManualHandle(self._time + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._queue, handle)
        return handle

    def cancel(self, handle: Any):
        if handle is not None:
            handle.cancelled = True

    def run_io(self, fn: Callable[[], Any], on_done: IoCallback):
        try:
            result: Tuple[Any, Optional[BaseException]] = (fn(), None)
        except Exception as e:
            result = (None, e)
        self.call_later(0, lambda: on_done(*result))

    def pending(self) -> int:
        return sum(1 for h in self._queue if not h.cancelled)

    def run_pending(self):
        """Run everything due at the current time, including newly due work."""
        self.advance(0)

    def advance(self, seconds: float):
        """Move the clock forward, firing due callbacks in time order."""
        deadline = self._time + seconds
        while self._queue and self._queue[0].when <= deadline:
            handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._time = max(self._time, handle.when)
            _guarded(handle.callback)()
        self._time = deadline


def _guarded(callback: Callable[[], Any]) -> Callable[[], None]:
    def run():
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback failed")

    return run


def _guarded_done(callback: Callable[[Any], Any]) -> Callable[[Any], None]:
    def run(arg):
        try:
            callback(arg)
        except Exception:
            logger.exception("I/O completion callback failed")

    return run
