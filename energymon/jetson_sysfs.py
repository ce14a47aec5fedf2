"""Discovery of INA3221 power rails in sysfs on NVIDIA Jetson boards."""

from __future__ import annotations

import errno
import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from energymon.core import EnergyMonError

_log = logging.getLogger(__name__)

INA3221_DIR = "/sys/bus/i2c/drivers/ina3221"
INA3221X_DIR = "/sys/bus/i2c/drivers/ina3221x"

# the hardware supports up to 3 channels per instance
INA3221_CHANNELS_MAX = 3

_NAME_MAX = 64
_LONG_MAX_READ = 64

_LONG = re.compile(r"\s*([+-]?)(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")


def _strtol(text: str) -> int:
    match = _LONG.match(text)
    if match is None:
        return 0
    sign, hex_digits, octal, decimal = match.groups()
    if hex_digits is not None:
        value = int(hex_digits, 16)
    elif octal is not None:
        value = int(octal, 8)
    else:
        value = int(decimal)
    return -value if sign == "-" else value


def is_dir(path: str | os.PathLike[str]) -> bool:
    """Return whether ``path`` is a directory; False only if it does not exist."""
    try:
        with os.scandir(path):
            return True
    except FileNotFoundError:
        return False


def read_string(path: str | os.PathLike[str]) -> str:
    """Read a short sysfs string, without the trailing newline."""
    with open(path, "rb") as f:
        data = f.read(_NAME_MAX)
    data = data.split(b"\n", 1)[0].split(b"\0", 1)[0]
    return data.decode("ascii", "replace")


def read_long(path: str | os.PathLike[str]) -> int:
    """Read an integer (decimal, octal or hex prefix) from a sysfs file."""
    with open(path, "rb") as f:
        data = f.read(_LONG_MAX_READ)
    if not data:
        raise EnergyMonError(errno.EIO, f"no data in {os.fspath(path)}")
    return _strtol(data.decode("ascii", "replace"))


def is_i2c_bus_addr_dir(entry: os.DirEntry[str]) -> bool:
    """Return whether ``entry`` looks like an I2C bus address (``X-ABCDE``)."""
    name = entry.name
    return (
        len(name) > 2
        and name[0] != "."
        and name[1] == "-"
        and (entry.is_symlink() or entry.is_dir(follow_symlinks=False))
    )


def _is_hwmon_dir(entry: os.DirEntry[str]) -> bool:
    return entry.is_dir(follow_symlinks=False) and entry.name.startswith("hwmon")


def _is_iio_device_dir(entry: os.DirEntry[str]) -> bool:
    name = entry.name
    return (
        entry.is_dir(follow_symlinks=False)
        and len(name) > 10
        and name[0] != "."
        and name[3] == ":"
    )


def _sorted_entries(path: Path, keep) -> list[str]:
    with os.scandir(path) as entries:
        return sorted(entry.name for entry in entries if keep(entry))


@dataclass
class RailScan:
    """Open sensor files of the rails found, indexed like ``names``.

    INA3221 scans fill ``voltage_fds`` and ``current_fds``; INA3221X scans
    fill ``power_fds``.  A rail that was not found has ``None``.
    ``interval_us`` is the largest sensor update interval seen (0 if none).
    """

    names: tuple[str, ...]
    voltage_fds: list[int | None] = field(default_factory=list)
    current_fds: list[int | None] = field(default_factory=list)
    power_fds: list[int | None] = field(default_factory=list)
    interval_us: int = 0

    def __post_init__(self) -> None:
        self.names = tuple(self.names)
        count = len(self.names)
        for fds in (self.voltage_fds, self.current_fds, self.power_fds):
            if not fds:
                fds.extend([None] * count)

    def _note_interval(self, interval_us: int) -> None:
        if interval_us > self.interval_us:
            self.interval_us = interval_us

    def close(self) -> None:
        """Close every open sensor file."""
        for fds in (self.voltage_fds, self.current_fds, self.power_fds):
            for i, fd in enumerate(fds):
                if fd is not None:
                    try:
                        os.close(fd)
                    except OSError as exc:
                        _log.warning("close: %s", exc)
                    fds[i] = None

    def __enter__(self) -> RailScan:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _match(name: str, names: tuple[str, ...]) -> int | None:
    for i, wanted in enumerate(names):
        if name[:_NAME_MAX] == wanted[:_NAME_MAX]:
            return i
    return None


def _interval_from(path: Path) -> int:
    try:
        return read_long(path) * 1000
    except OSError:
        return -1


def ina3221_exists(base_dir: str | os.PathLike[str] = INA3221_DIR) -> bool:
    """Return whether the ina3221 driver directory exists."""
    return is_dir(base_dir)


def _ina3221_walk_device(scan: RailScan, device: Path) -> None:
    # all 3 channels must exist; unconnected ones are labelled "NC"
    interval_read = False
    for channel in range(1, INA3221_CHANNELS_MAX + 1):
        name = read_string(device / f"in{channel}_label")
        i = _match(name, scan.names)
        if i is None:
            continue
        if scan.voltage_fds[i] is not None:
            raise EnergyMonError(errno.EEXIST, f"Duplicate sensor name: {name}")
        scan.voltage_fds[i] = os.open(device / f"in{channel}_input", os.O_RDONLY)
        try:
            scan.current_fds[i] = os.open(device / f"curr{channel}_input", os.O_RDONLY)
        except OSError:
            os.close(scan.voltage_fds[i])
            scan.voltage_fds[i] = None
            raise
        if not interval_read:
            interval_read = True
            scan._note_interval(_interval_from(device / "update_interval"))


def ina3221_walk(
    names: Iterable[str], base_dir: str | os.PathLike[str] = INA3221_DIR
) -> RailScan:
    """Open the voltage and current files of the named rails."""
    base = Path(base_dir)
    scan = RailScan(tuple(names))
    try:
        for bus_addr in _sorted_entries(base, is_i2c_bus_addr_dir):
            hwmon_root = base / bus_addr / "hwmon"
            for hwmon in _sorted_entries(hwmon_root, _is_hwmon_dir):
                _ina3221_walk_device(scan, hwmon_root / hwmon)
    except BaseException:
        scan.close()
        raise
    return scan


def ina3221x_exists(base_dir: str | os.PathLike[str] = INA3221X_DIR) -> bool:
    """Return whether the ina3221x driver directory exists."""
    return is_dir(base_dir)


def _ina3221x_walk_device(scan: RailScan, device: Path) -> None:
    # channels may be unconnected, in which case their files are missing
    for channel in range(INA3221_CHANNELS_MAX):
        try:
            name = read_string(device / f"rail_name_{channel}")
        except FileNotFoundError:
            continue
        i = _match(name, scan.names)
        if i is None:
            continue
        if scan.power_fds[i] is not None:
            raise EnergyMonError(errno.EEXIST, f"Duplicate sensor name: {name}")
        scan.power_fds[i] = os.open(device / f"in_power{channel}_input", os.O_RDONLY)
        scan._note_interval(_interval_from(device / f"polling_delay_{channel}"))


def ina3221x_walk(
    names: Iterable[str], base_dir: str | os.PathLike[str] = INA3221X_DIR
) -> RailScan:
    """Open the power files of the named rails."""
    base = Path(base_dir)
    scan = RailScan(tuple(names))
    try:
        for bus_addr in _sorted_entries(base, is_i2c_bus_addr_dir):
            bus_dir = base / bus_addr
            for device in _sorted_entries(bus_dir, _is_iio_device_dir):
                _ina3221x_walk_device(scan, bus_dir / device)
    except BaseException:
        scan.close()
        raise
    return scan