"""Energy readers for Cray Power Monitoring counter files."""

from __future__ import annotations

import enum
import errno
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path
from typing import IO

from energymon.core import EnergyMon, EnergyMonError

_log = logging.getLogger(__name__)

CRAY_PM_BASE_DIR = "/sys/cray/pm_counters"
COUNTERS_ENV_VAR = "ENERGYMON_CRAY_PM_COUNTERS"
DEFAULT_INTERVAL_US = 100_000
PRECISION_UJ = 1_000_000

_NUMBER = re.compile(r"\s*(\d+)")


class CrayPmCounter(str, enum.Enum):
    """Counter files that can be read."""

    ENERGY = "energy"
    ACCEL_ENERGY = "accel_energy"
    CPU_ENERGY = "cpu_energy"
    MEMORY_ENERGY = "memory_energy"


def parse_counters(text: str) -> tuple[CrayPmCounter, ...]:
    """Parse a comma-separated list of counter names.

    Empty entries are skipped and repeated names are kept once.
    """
    counters: list[CrayPmCounter] = []
    for token in filter(None, text.split(",")):
        try:
            counter = CrayPmCounter(token)
        except ValueError:
            raise EnergyMonError(
                errno.EINVAL,
                f"Unknown token in environment variable {COUNTERS_ENV_VAR}: {token}",
            ) from None
        if counter not in counters:
            counters.append(counter)
    return tuple(counters)


def read_interval_us(base_dir: str | os.PathLike[str] = CRAY_PM_BASE_DIR) -> int:
    """Return the counter refresh interval in microseconds (10 Hz by default)."""
    path = Path(base_dir) / "raw_scan_hz"
    try:
        text = path.read_text()
    except OSError as exc:
        _log.warning("%s: %s", path, exc)
        return DEFAULT_INTERVAL_US
    match = _NUMBER.match(text)
    if match is not None:
        hz = int(match.group(1))
        if hz > 0:
            return 1_000_000 // hz
    return DEFAULT_INTERVAL_US


def _read_number(f: IO[str], name: str) -> int:
    f.seek(0)
    match = _NUMBER.match(f.read())
    if match is None:
        raise EnergyMonError(errno.EIO, f"unreadable counter value in {name}")
    return int(match.group(1))


class CrayPmCounterMon(EnergyMon):
    """Reads a single Cray PM energy counter file."""

    def __init__(
        self,
        counter: CrayPmCounter | str = CrayPmCounter.ENERGY,
        base_dir: str | os.PathLike[str] = CRAY_PM_BASE_DIR,
    ) -> None:
        self.counter = CrayPmCounter(counter)
        self.base_dir = Path(base_dir)
        self._file: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self.base_dir / self.counter.value

    def init(self) -> None:
        if self._file is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        self._file = open(self.path)

    def read_total(self) -> int:
        if self._file is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        return _read_number(self._file, str(self.path)) * 1_000_000

    def finish(self) -> None:
        if self._file is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        f, self._file = self._file, None
        f.close()

    def source(self) -> str:
        return f"Cray Power Monitoring - {self.counter.value}"

    def interval(self) -> int:
        return read_interval_us(self.base_dir)

    def precision(self) -> int:
        return PRECISION_UJ

    def is_exclusive(self) -> bool:
        return False


class CrayPmMon(EnergyMon):
    """Sums several Cray PM counters, read consistently via the freshness file.

    When ``counters`` is None the list is taken from the
    ``ENERGYMON_CRAY_PM_COUNTERS`` environment variable at ``init``.
    """

    def __init__(
        self,
        counters: str | Iterable[CrayPmCounter | str] | None = None,
        base_dir: str | os.PathLike[str] = CRAY_PM_BASE_DIR,
    ) -> None:
        self.counters = counters
        self.base_dir = Path(base_dir)
        self._freshness: IO[str] | None = None
        self._monitors: list[CrayPmCounterMon] = []

    def _resolve_counters(self) -> tuple[CrayPmCounter, ...]:
        if self.counters is None:
            text = os.environ.get(COUNTERS_ENV_VAR)
            if text is None:
                raise EnergyMonError(
                    errno.EINVAL, f"Must set environment variable {COUNTERS_ENV_VAR}"
                )
            return parse_counters(text)
        if isinstance(self.counters, str):
            return parse_counters(self.counters)
        resolved: list[CrayPmCounter] = []
        for item in self.counters:
            counter = CrayPmCounter(item)
            if counter not in resolved:
                resolved.append(counter)
        return tuple(resolved)

    def init(self) -> None:
        if self._freshness is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        counters = self._resolve_counters()
        self._freshness = open(self.base_dir / "freshness")
        try:
            for counter in counters:
                mon = CrayPmCounterMon(counter, self.base_dir)
                mon.init()
                self._monitors.append(mon)
        except BaseException:
            try:
                self.finish()
            except OSError:
                pass
            raise

    def read_total(self) -> int:
        if self._freshness is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        name = str(self.base_dir / "freshness")
        # don't let the counters update in the middle of reading
        while True:
            fresh_start = _read_number(self._freshness, name)
            total = sum(mon.read_total() for mon in self._monitors)
            fresh_end = _read_number(self._freshness, name)
            if fresh_start == fresh_end:
                return total

    def finish(self) -> None:
        if self._freshness is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        first_error: OSError | None = None
        for mon in self._monitors:
            try:
                mon.finish()
            except OSError as exc:
                first_error = first_error or exc
        self._monitors = []
        freshness, self._freshness = self._freshness, None
        try:
            freshness.close()
        except OSError as exc:
            first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def source(self) -> str:
        return "Cray Power Monitoring files"

    def interval(self) -> int:
        return read_interval_us(self.base_dir)

    def precision(self) -> int:
        return PRECISION_UJ

    def is_exclusive(self) -> bool:
        return False