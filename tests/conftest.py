import atexit
import faulthandler
import os
import sys
import tempfile
import threading
import time
from typing import Optional

# Keep test logs out of the user's home; must run before popup_guard is imported
os.environ.setdefault("POPUP_GUARD_LOG_DIR", tempfile.mkdtemp(prefix="popup_guard_logs_"))

import pytest  # noqa: E402

from popup_guard.core.scheduler import ScheduledTask, Scheduler  # noqa: E402


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        try:
            faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        except Exception:
            pass
        # Hard exit: guarantees CI can't hang forever.
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    try:
        faulthandler.enable(all_threads=True)
    except Exception:
        pass

    # Absolute upper bound for the whole test run (default: 10 minutes).
    watchdog_seconds = _env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 10 * 60)
    timer = _start_watchdog(watchdog_seconds)

    if timer is not None:
        atexit.register(timer.cancel)

    dump_every = _env_int("PYTEST_DUMP_STACK_EVERY_SECONDS", 0)
    if dump_every > 0:
        _start_periodic_dump(dump_every)


def _start_periodic_dump(every_seconds: int) -> None:
    def _loop() -> None:
        while True:
            time.sleep(every_seconds)
            try:
                faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
            except Exception:
                pass

    t = threading.Thread(target=_loop, daemon=True)
    t.start()


# --- deterministic time ---


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _ManualTask(ScheduledTask):
    def __init__(self, due: float, callback, args):
        self.due = due
        self.callback = callback
        self.args = args
        self.fired = False
        self._cancelled = False

    def cancel(self) -> bool:
        if self.fired or self._cancelled:
            return False
        self._cancelled = True
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Scheduler whose callbacks only run when advance() passes their due time."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.tasks = []

    def call_later(self, delay_seconds, callback, *args):
        task = _ManualTask(self.clock() + delay_seconds, callback, args)
        self.tasks.append(task)
        return task

    @property
    def active(self):
        return [t for t in self.tasks if not t.fired and not t.cancelled]

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every task that became due."""
        self.clock.advance(seconds)
        fired = 0
        for task in sorted(self.active, key=lambda t: t.due):
            if task.due <= self.clock() and not task.cancelled:
                task.fired = True
                task.callback(*task.args)
                fired += 1
        return fired


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)
