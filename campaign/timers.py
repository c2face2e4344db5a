"""
Campaign Orchestrator — Fire-Once Timers

Timers are a latency optimization only: the store's absolute timestamps
are authoritative and the resumption sweep repairs anything a lost timer
missed. Every callback therefore re-reads state at fire time.

Keys are strings like "phase:<operation_id>" or "msg:<message_id>".
Arming an existing key replaces the previous timer.

  - ThreadTimerService: one threading.Timer per key (production)
  - ManualTimerService: records timers, fired explicitly via fire_due(now)
                        (tests, CLI)
  - NullTimerService:   arms nothing (sweep-only workers, where the
                        periodic sweep does all the work)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger("campaign_orchestrator.timers")

TimerCallback = Callable[[], None]


def run_guarded(key: str, callback: TimerCallback) -> bool:
    """Run a timer callback; log and swallow any exception. Returns success."""
    try:
        callback()
        return True
    except Exception:
        logger.exception("Timer callback failed: %s", key)
        return False


class TimerService:
    """Abstract keyed timer facility."""

    def arm(self, key: str, when: float, callback: TimerCallback) -> None:
        raise NotImplementedError

    def cancel(self, key: str) -> bool:
        raise NotImplementedError

    def pending(self) -> dict[str, float]:
        """Armed keys and their due times."""
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════
# Threaded
# ═══════════════════════════════════════════════════════════════════

class ThreadTimerService(TimerService):
    """threading.Timer per key. Due times are absolute wall-clock seconds."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._timers: dict[str, tuple[threading.Timer, float]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def arm(self, key: str, when: float, callback: TimerCallback) -> None:
        delay = max(0.0, when - self._clock())

        def _fire():
            with self._lock:
                entry = self._timers.get(key)
                if entry is None or entry[0] is not timer:
                    return
                del self._timers[key]
            run_guarded(key, callback)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            previous = self._timers.pop(key, None)
            if previous:
                previous[0].cancel()
            self._timers[key] = (timer, when)
        timer.start()

    def cancel(self, key: str) -> bool:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def pending(self) -> dict[str, float]:
        with self._lock:
            return {k: when for k, (_, when) in self._timers.items()}

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer, _ in timers:
            timer.cancel()


# ═══════════════════════════════════════════════════════════════════
# Manual
# ═══════════════════════════════════════════════════════════════════

class ManualTimerService(TimerService):
    """Timers that only fire when fire_due() is called."""

    def __init__(self):
        self._timers: dict[str, tuple[float, TimerCallback]] = {}
        self._lock = threading.Lock()

    def arm(self, key: str, when: float, callback: TimerCallback) -> None:
        with self._lock:
            self._timers[key] = (when, callback)

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._timers.pop(key, None) is not None

    def pending(self) -> dict[str, float]:
        with self._lock:
            return {k: when for k, (when, _) in self._timers.items()}

    def fire_due(self, now: float) -> int:
        """
        Fire every timer due at `now`, earliest first. Timers armed by a
        callback are fired in the same call if they are already due.
        Returns the number of callbacks run.
        """
        fired = 0
        while True:
            with self._lock:
                due = sorted(
                    ((when, key) for key, (when, _) in self._timers.items() if when <= now),
                )
                if not due:
                    return fired
                _, key = due[0]
                _, callback = self._timers.pop(key)
            run_guarded(key, callback)
            fired += 1


class NullTimerService(TimerService):
    """Arms nothing. For processes that only run the periodic sweep."""

    def arm(self, key: str, when: float, callback: TimerCallback) -> None:
        pass

    def cancel(self, key: str) -> bool:
        return False

    def pending(self) -> dict[str, float]:
        return {}
