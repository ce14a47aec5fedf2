"""Clock reading and sleeping helpers."""

from __future__ import annotations

import enum
import threading
import time


class Clock(enum.IntEnum):
    """Clocks that can be read."""

    REALTIME = 0
    MONOTONIC = 1


def gettime_ns(clock: Clock | int) -> int:
    """Return the current time of ``clock`` in nanoseconds."""
    clock = Clock(clock)
    if clock is Clock.REALTIME:
        return time.time_ns()
    return time.monotonic_ns()


def gettime_us(clock: Clock | int) -> int:
    """Return the current time of ``clock`` in microseconds."""
    return gettime_ns(clock) // 1000


def _elapsed(now: int, since: int) -> tuple[int, int]:
    if since > now:
        raise ValueError("reference time lies in the future")
    return now - since, now


def gettime_elapsed_ns(clock: Clock | int, since_ns: int) -> tuple[int, int]:
    """Return ``(elapsed_ns, now_ns)`` measured from ``since_ns``."""
    return _elapsed(gettime_ns(clock), since_ns)


def gettime_elapsed_us(clock: Clock | int, since_us: int) -> tuple[int, int]:
    """Return ``(elapsed_us, now_us)`` measured from ``since_us``."""
    return _elapsed(gettime_us(clock), since_us)


def sleep_ns(ns: int) -> None:
    """Sleep for ``ns`` nanoseconds."""
    if ns < 0:
        raise ValueError("sleep duration must not be negative")
    time.sleep(ns / 1_000_000_000)


def sleep_us(us: int) -> None:
    """Sleep for ``us`` microseconds."""
    if us < 0:
        raise ValueError("sleep duration must not be negative")
    sleep_ns(us * 1000)


def sleep_us_no_interrupt(us: int, stop: threading.Event | None = None) -> bool:
    """Sleep for ``us`` microseconds on the monotonic clock.

    If ``stop`` is given and becomes set, the sleep ends early.
    Returns True if the full period elapsed, False if stopped.
    """
    if us < 0:
        raise ValueError("sleep duration must not be negative")
    deadline = time.monotonic_ns() + us * 1000
    while True:
        remaining = deadline - time.monotonic_ns()
        if remaining <= 0:
            return True
        if stop is None:
            time.sleep(remaining / 1_000_000_000)
        elif stop.wait(remaining / 1_000_000_000):
            return False