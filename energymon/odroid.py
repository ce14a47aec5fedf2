"""Energy estimates for ODROID boards with INA231 power sensors."""

from __future__ import annotations

import errno
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path

from energymon.core import EnergyMonError
from energymon.polling import PollingEnergyMon

_log = logging.getLogger(__name__)

INA231_DIR = "/sys/bus/i2c/drivers/INA231"
DEFAULT_UPDATE_INTERVAL_US = 263_808

_INT = re.compile(r"\s*([+-]?\d+)")
_UINT = re.compile(r"\s*\+?(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")
_FLOAT = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def _atoi(text: str) -> int:
    match = _INT.match(text)
    return int(match.group(1)) if match else 0


def _strtoul(text: str) -> int:
    match = _UINT.match(text)
    if match is None:
        return 0
    hex_digits, octal, decimal = match.groups()
    if hex_digits is not None:
        return int(hex_digits, 16)
    if octal is not None:
        return int(octal, 8)
    return int(decimal)


def _strtod(text: str) -> float:
    match = _FLOAT.match(text)
    return float(match.group(1)) if match else 0.0


def _is_sensor_entry(entry: os.DirEntry[str]) -> bool:
    name = entry.name
    return (
        len(name) > 1
        and name[0] != "."
        and name[1] == "-"
        and (entry.is_symlink() or entry.is_dir(follow_symlinks=False))
    )


def find_sensor_dirs(base_dir: str | os.PathLike[str] = INA231_DIR) -> list[str]:
    """Return the sensor directory names (like ``3-0040``) under ``base_dir``."""
    with os.scandir(base_dir) as entries:
        names = sorted(entry.name for entry in entries if _is_sensor_entry(entry))
    if not names:
        raise EnergyMonError(
            errno.ENOENT, f"Failed to find power sensors: {os.fspath(base_dir)}"
        )
    return names


def is_sensor_enabled(path: str | os.PathLike[str]) -> bool:
    """Return whether the sensor ``enable`` file at ``path`` holds a true value."""
    text = Path(path).read_bytes()[:24].decode("ascii", "replace")
    return _atoi(text) != 0


def update_interval_us(
    base_dir: str | os.PathLike[str], sensors: Iterable[str]
) -> int:
    """Return the largest sensor update period in microseconds, or the default."""
    result = 0
    for sensor in sensors:
        path = Path(base_dir) / sensor / "update_period"
        try:
            data = path.read_bytes()[:24]
        except OSError as exc:
            _log.warning("%s: %s", path, exc)
            continue
        if not data:
            _log.warning("%s: empty file", path)
            continue
        result = max(result, _strtoul(data.decode("ascii", "replace")))
    if not result:
        _log.debug("using default update interval: %d us", DEFAULT_UPDATE_INTERVAL_US)
        result = DEFAULT_UPDATE_INTERVAL_US
    return result


class OdroidEnergyMon(PollingEnergyMon):
    """Integrates the INA231 power readings found under ``base_dir``."""

    def __init__(self, base_dir: str | os.PathLike[str] = INA231_DIR) -> None:
        super().__init__()
        self.base_dir = Path(base_dir)
        self._fds: list[int] | None = None

    def init(self) -> None:
        if self._fds is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        sensors = find_sensor_dirs(self.base_dir)
        for sensor in sensors:
            if not is_sensor_enabled(self.base_dir / sensor / "enable"):
                raise EnergyMonError(errno.ENODEV, f"sensor not enabled: {sensor}")
        fds: list[int] = []
        try:
            for sensor in sensors:
                fds.append(os.open(self.base_dir / sensor / "sensor_W", os.O_RDONLY))
            interval_us = update_interval_us(self.base_dir, sensors)
            self._fds = fds
            self.start_polling(interval_us)
        except BaseException:
            self._fds = None
            _close_all(fds)
            raise

    def finish(self) -> None:
        if self._fds is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        self.stop_polling()
        fds, self._fds = self._fds, None
        error = _close_all(fds)
        if error is not None:
            raise error

    def energy_increment(self, elapsed_us: int) -> int:
        if self._fds is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        sum_w = 0.0
        for fd in self._fds:
            data = os.pread(fd, 8, 0)
            if data:
                sum_w += _strtod(data.decode("ascii", "replace"))
        return int(sum_w * elapsed_us)

    def source(self) -> str:
        return "ODROID INA231 Power Sensors"

    def precision(self) -> int:
        # microwatts at the refresh interval
        return self.interval() // 1_000_000 or 1

    def is_exclusive(self) -> bool:
        return False


def _close_all(fds: Iterable[int]) -> OSError | None:
    first_error: OSError | None = None
    for fd in fds:
        try:
            os.close(fd)
        except OSError as exc:
            first_error = first_error or exc
    return first_error