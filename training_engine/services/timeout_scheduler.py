"""
Deferred auto-submit callbacks for timed attempts
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Protocol

from training_engine.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class TimeoutScheduler(Protocol):
    """Schedules one cancellable callback per attempt id"""

    def schedule(self, attempt_id: str, fire_at: datetime, callback: Callable[[], None]) -> None:
        ...

    def cancel(self, attempt_id: str) -> None:
        ...


class NullTimeoutScheduler:
    """
    Scheduler that never fires

    For deployments that rely on AttemptService.expire_overdue_attempts
    being run periodically instead of in-process timers.
    """

    def schedule(self, attempt_id: str, fire_at: datetime, callback: Callable[[], None]) -> None:
        logger.debug(f"Timeout for attempt {attempt_id} left to the sweeper ({fire_at})")

    def cancel(self, attempt_id: str) -> None:
        pass


class ThreadingTimeoutScheduler:
    """
    In-process scheduler backed by threading.Timer

    Cancelling is best effort: a timer that already started running still
    calls back, which is harmless because submission is idempotent.
    """

    def __init__(self, clock: Clock = system_clock):
        self.clock = clock
        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}

    def schedule(self, attempt_id: str, fire_at: datetime, callback: Callable[[], None]) -> None:
        delay = max((fire_at - self.clock.now()).total_seconds(), 0.0)

        def _run():
            with self._lock:
                self._timers.pop(attempt_id, None)
            callback()

        timer = threading.Timer(delay, _run)
        timer.daemon = True

        with self._lock:
            previous = self._timers.pop(attempt_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[attempt_id] = timer

        timer.start()
        logger.info(f"Scheduled auto-submit for attempt {attempt_id} in {delay:.0f}s")

    def cancel(self, attempt_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(attempt_id, None)
        if timer is not None:
            timer.cancel()
            logger.info(f"Cancelled auto-submit for attempt {attempt_id}")

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self) -> None:
        """Cancel every outstanding timer"""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
