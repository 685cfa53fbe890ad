"""
cknfs: Watchdog

Last line of defence against filesystem calls that have no timeout.

The prober should keep us away from dead servers, but lstat(), readlink() and
open() on a mount can still hang if a server dies between the probe and the
call, or if the mount table lied. Each such call runs on a short-lived daemon
thread while the caller waits on it with the time left on the watchdog:

    with Watchdog(limit=11.0) as wd:     # armed
        wd.arm()                         # restart the clock for this step
        st = wd.call(os.lstat, "bin", dir_fd=fd)
                                         # WatchdogTimeout if it doesn't return
                                         # disarmed on any exit

A call that times out is abandoned, not killed: its thread finishes whenever
the kernel lets it. A result that arrives after abandonment is handed to
``discard`` (e.g. os.close for a late descriptor) so nothing leaks.
"""

from __future__ import annotations
from typing import Any, Callable, Optional
import logging
import threading
import time

from .errors import WatchdogTimeout

logger = logging.getLogger("cknfs.watchdog")


class _SupervisedCall:
    """One call on a worker thread, plus what to do if nobody waits for it."""

    def __init__(self, func: Callable, args: tuple, kwargs: dict,
                 discard: Optional[Callable[[Any], None]]):
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.discard = discard
        self._lock = threading.Lock()
        self._done = False
        self._abandoned = False
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            value = self.func(*self.args, **self.kwargs)
            error = None
        except BaseException as e:
            value, error = None, e
        with self._lock:
            self._done = True
            self._value, self._error = value, error
            late = self._abandoned
        if late and error is None and self.discard is not None:
            try:
                self.discard(value)
            except Exception as e:
                logger.debug(f"discarding late result of {self.name}: {e}")

    def abandon(self) -> bool:
        """Mark abandoned. False if the call finished after all."""
        with self._lock:
            if self._done:
                return False
            self._abandoned = True
            return True

    def result(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._value

    @property
    def name(self) -> str:
        return getattr(self.func, "__name__", repr(self.func))


class Watchdog:
    def __init__(self, limit: float):
        self.limit = limit
        self.deadline: Optional[float] = None
        self.abandoned = 0              # calls left running after a timeout

    def __enter__(self) -> Watchdog:
        self.arm()
        return self

    def __exit__(self, *exc) -> None:
        self.disarm()

    @property
    def armed(self) -> bool:
        return self.deadline is not None

    def arm(self) -> None:
        self.deadline = time.monotonic() + self.limit

    def disarm(self) -> None:
        self.deadline = None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise WatchdogTimeout(f"watchdog expired after {self.limit:.1f}s")

    def call(self, func: Callable, *args,
             discard: Optional[Callable[[Any], None]] = None, **kwargs) -> Any:
        """Run func(*args, **kwargs), giving up when the watchdog expires."""
        self.check()
        if self.deadline is None:
            return func(*args, **kwargs)

        call = _SupervisedCall(func, args, kwargs, discard)
        worker = threading.Thread(target=call.run, daemon=True,
                                  name=f"cknfs-watchdog-{call.name}")
        worker.start()
        worker.join(self.remaining())
        if worker.is_alive() and call.abandon():
            self.abandoned += 1
            logger.debug(f"abandoned {call.name}{args!r} after {self.limit:.1f}s")
            raise WatchdogTimeout(
                f"{call.name} did not return within {self.limit:.1f}s"
            )
        return call.result()
