"""Interval-triggered polls.

One timer thread per process wakes up every ``tick`` seconds and starts
the polls that are due, each on a worker thread. A poll still running when
it becomes due again is not started twice.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Schedule:
    name: str
    interval: float
    run: Callable[[], Any]
    next_due: float
    running: bool = False


class PollScheduler:
    """Runs registered polls at their intervals.

    Args:
        tick: Seconds between two checks of the timer thread
        clock: Monotonic time source, injectable for tests
        max_workers: Polls running at the same time

    Example:
        scheduler = PollScheduler(tick=1.0)
        scheduler.register('hosts.ping', 30.0, run_ping)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, tick: float = 1.0, clock: Callable[[], float] = time.monotonic,
                 max_workers: int = 4):
        self.tick_interval = tick
        self.clock = clock
        self.max_workers = max_workers
        self.results: Dict[str, Any] = {}
        self._polls: Dict[str, _Schedule] = {}
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def register(self, name: str, interval: float, run: Callable[[], Any]) -> None:
        """Register a poll; it first becomes due one interval from now.

        Raises:
            ValueError: If the name is taken or the interval is not positive.
        """
        if interval <= 0:
            raise ValueError(f"Poll '{name}' needs a positive interval")
        with self._lock:
            if name in self._polls:
                raise ValueError(f"Duplicate poll: {name}")
            self._polls[name] = _Schedule(name, interval, run, self.clock() + interval)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._polls)

    def due(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        with self._lock:
            return [s.name for s in self._polls.values()
                    if not s.running and s.next_due <= now]

    def _executor(self) -> ThreadPoolExecutor:
        # caller holds self._lock
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                            thread_name_prefix='opflow-poll')
        return self._pool

    def tick(self, now: Optional[float] = None) -> List[Future]:
        """Start every poll due at ``now``; return their futures.

        A stopped scheduler starts nothing until ``start()`` is called again.
        """
        now = self.clock() if now is None else now
        futures = []
        with self._lock:
            if self._stop.is_set():
                logger.debug("Poll scheduler stopped; tick ignored")
                return futures
            for schedule in self._polls.values():
                if schedule.running or schedule.next_due > now:
                    continue
                schedule.running = True
                schedule.next_due = now + schedule.interval
                futures.append(self._executor().submit(self._run, schedule))
        return futures

    def _run(self, schedule: _Schedule) -> Any:
        logger.debug("Running poll '%s'", schedule.name)
        try:
            result = schedule.run()
            self.results[schedule.name] = result
            return result
        except Exception:
            logger.exception("Poll '%s' failed", schedule.name)
            raise
        finally:
            with self._lock:
                schedule.running = False

    def _loop(self) -> None:
        while not self._stop.wait(self.tick_interval):
            self.tick()

    def start(self) -> None:
        """Start the timer thread (no-op if already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='opflow-poll-timer',
                                        daemon=True)
        self._thread.start()
        logger.info("Poll scheduler started with %d poll(s)", len(self._polls))

    def stop(self, wait: bool = True) -> None:
        """Stop the timer thread and the worker pool."""
        with self._lock:
            self._stop.set()
            pool, self._pool = self._pool, None
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if pool is not None:
            pool.shutdown(wait=wait)
        logger.info("Poll scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
