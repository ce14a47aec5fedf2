"""Base class for monitors that integrate power readings in a background thread."""

from __future__ import annotations

import abc
import errno
import logging
import threading

from energymon import ptime
from energymon.core import EnergyMon, EnergyMonError
from energymon.ptime import Clock

_log = logging.getLogger(__name__)


class PollingEnergyMon(EnergyMon):
    """Estimates energy by polling power sensors at a fixed interval.

    Subclasses open their sensors in ``init`` and call ``start_polling``;
    ``finish`` calls ``stop_polling`` before releasing the sensors.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_uj = 0
        self._interval_us = 0
        self._active = False
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @abc.abstractmethod
    def energy_increment(self, elapsed_us: int) -> int:
        """Read the sensors and return the energy in uJ used over ``elapsed_us``.

        Raising ``OSError`` skips this reading.
        """

    def start_polling(self, interval_us: int) -> None:
        """Start the polling thread with the given interval in microseconds."""
        if self._active:
            raise EnergyMonError(errno.EINVAL, "polling already started")
        if interval_us <= 0:
            raise ValueError("polling interval must be positive")
        self._interval_us = interval_us
        with self._lock:
            self._total_uj = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._poll, args=(self._stop, interval_us), daemon=True
        )
        self._thread.start()
        self._active = True

    def stop_polling(self) -> None:
        """Stop the polling thread and wait for it to end."""
        if self._stop is not None:
            self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self._stop = None
        self._thread = None
        self._active = False

    def _poll(self, stop: threading.Event, interval_us: int) -> None:
        last_us = ptime.gettime_us(Clock.MONOTONIC)
        ptime.sleep_us_no_interrupt(interval_us, stop)
        while not stop.is_set():
            try:
                elapsed_us, last_us = ptime.gettime_elapsed_us(Clock.MONOTONIC, last_us)
                increment = self.energy_increment(elapsed_us)
            except OSError as exc:
                _log.warning("skipping power sensor reading: %s", exc)
            else:
                with self._lock:
                    self._total_uj += int(increment)
            if not stop.is_set():
                ptime.sleep_us_no_interrupt(interval_us, stop)

    def _require_active(self) -> None:
        if not self._active:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")

    def read_total(self) -> int:
        """Return the accumulated energy estimate in microjoules."""
        self._require_active()
        with self._lock:
            return self._total_uj

    def interval(self) -> int:
        """Return the polling interval in microseconds."""
        self._require_active()
        return self._interval_us