"""Energy estimates for NVIDIA Jetson boards with INA3221 power monitors."""

from __future__ import annotations

import errno
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path

from energymon.core import EnergyMonError
from energymon.jetson_sysfs import (
    INA3221_DIR,
    INA3221X_DIR,
    RailScan,
    ina3221_exists,
    ina3221_walk,
    ina3221x_exists,
    ina3221x_walk,
)
from energymon.polling import PollingEnergyMon

_log = logging.getLogger(__name__)

RAIL_NAMES_ENV_VAR = "ENERGYMON_JETSON_RAIL_NAMES"
INTERVAL_ENV_VAR = "ENERGYMON_JETSON_INTERVAL_US"

# sysfs reports polling delay at millisecond granularity
INA3221_MIN_POLLING_DELAY_US = 1000
# empirically a good value with very low overhead
INA3221_DEFAULT_POLLING_DELAY_US = 100_000

# Searched in order; a name set must not be a subset of any later set.
DEFAULT_RAIL_NAMES: tuple[tuple[str, ...], ...] = (
    # TX1 and most TX2 models: main board and carrier board
    ("VDD_IN", "VDD_MUX"),
    # Xavier NX and TX2 NX
    ("VDD_IN",),
    # Nano
    ("POM_5V_IN",),
    # AGX Xavier: all rails in parallel
    ("GPU", "CPU", "SOC", "CV", "VDDRQ", "SYS5V"),
    # AGX Orin
    ("VDD_GPU_SOC", "VDD_CPU_CV", "VIN_SYS_5V0"),
)

_ULONG_MAX = 2**64 - 1
_READ_SIZE = 8
_UINT = re.compile(r"\s*([+-]?)(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")


def _strtoul(text: str) -> int:
    """Parse like ``strtoul`` with base 0; raise on overflow."""
    match = _UINT.match(text)
    if match is None:
        return 0
    sign, hex_digits, octal, decimal = match.groups()
    if hex_digits is not None:
        value = int(hex_digits, 16)
    elif octal is not None:
        value = int(octal, 8)
    else:
        value = int(decimal)
    if value > _ULONG_MAX:
        raise OverflowError(f"value out of range: {text.strip()}")
    if sign == "-" and value:
        value = _ULONG_MAX + 1 - value
    return value


def parse_rail_names(text: str) -> tuple[str, ...]:
    """Split a comma-separated list of rail names, rejecting duplicates."""
    names = tuple(token for token in text.split(",") if token)
    if not names:
        raise EnergyMonError(
            errno.EINVAL, f"parsing error: {RAIL_NAMES_ENV_VAR}={text}"
        )
    return _check_unique(names)


def _check_unique(names: tuple[str, ...]) -> tuple[str, ...]:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise EnergyMonError(
                errno.EINVAL, f"duplicate rail name specified: {name}"
            )
        seen.add(name)
    return names


def polling_delay_us(sysfs_delay_us: int, env_value: str | None = None) -> int:
    """Choose the polling interval in microseconds.

    An explicit ``env_value`` takes precedence; otherwise the sysfs value is
    used, raised to at least the default.  The result is never below 1 ms.
    """
    if env_value is not None:
        try:
            us = _strtoul(env_value)
        except OverflowError:
            raise EnergyMonError(
                errno.ERANGE,
                f"failed to parse environment variable value: "
                f"{INTERVAL_ENV_VAR}={env_value}",
            ) from None
    else:
        us = max(sysfs_delay_us, INA3221_DEFAULT_POLLING_DELAY_US)
    return max(us, INA3221_MIN_POLLING_DELAY_US)


def _read_value(fd: int) -> int | None:
    data = os.pread(fd, _READ_SIZE, 0)
    if not data:
        return None
    return _strtoul(data.decode("ascii", "replace"))


class JetsonEnergyMon(PollingEnergyMon):
    """Integrates the power readings of INA3221 rails.

    When ``rail_names`` is None, the names come from the
    ``ENERGYMON_JETSON_RAIL_NAMES`` environment variable at ``init``; if that
    is unset too, a known default set of rails is searched for.
    """

    def __init__(
        self,
        rail_names: str | Iterable[str] | None = None,
        ina3221_dir: str | os.PathLike[str] = INA3221_DIR,
        ina3221x_dir: str | os.PathLike[str] = INA3221X_DIR,
    ) -> None:
        super().__init__()
        self.rail_names = rail_names
        self.ina3221_dir = Path(ina3221_dir)
        self.ina3221x_dir = Path(ina3221x_dir)
        self._scan: RailScan | None = None

    def _resolve_rail_names(self) -> tuple[str, ...] | None:
        if self.rail_names is None:
            text = os.environ.get(RAIL_NAMES_ENV_VAR)
            return None if text is None else parse_rail_names(text)
        if isinstance(self.rail_names, str):
            return parse_rail_names(self.rail_names)
        names = tuple(self.rail_names)
        if not names:
            raise EnergyMonError(errno.EINVAL, "no rail names given")
        return _check_unique(names)

    def _walk(self, names: tuple[str, ...], use_ina3221: bool) -> RailScan:
        if use_ina3221:
            return ina3221_walk(names, self.ina3221_dir)
        return ina3221x_walk(names, self.ina3221x_dir)

    @staticmethod
    def _found(scan: RailScan, use_ina3221: bool) -> list[bool]:
        if use_ina3221:
            return [
                mv is not None and ma is not None
                for mv, ma in zip(scan.voltage_fds, scan.current_fds)
            ]
        return [fd is not None for fd in scan.power_fds]

    def _open_rails(
        self, names: tuple[str, ...] | None, use_ina3221: bool
    ) -> RailScan:
        if names is not None:
            scan = self._walk(names, use_ina3221)
            for name, found in zip(names, self._found(scan, use_ina3221)):
                if not found:
                    scan.close()
                    raise EnergyMonError(
                        errno.ENODEV, f"did not find requested rail: {name}"
                    )
            return scan
        for candidate in DEFAULT_RAIL_NAMES:
            scan = self._walk(candidate, use_ina3221)
            found = self._found(scan, use_ina3221)
            if found[0] and all(found):
                return scan
            scan.close()
        raise EnergyMonError(
            errno.ENODEV,
            "did not find default rail(s) - is this a supported model? "
            f"Try setting {RAIL_NAMES_ENV_VAR}",
        )

    def init(self) -> None:
        if self._scan is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        use_ina3221 = ina3221_exists(self.ina3221_dir)
        use_ina3221x = ina3221x_exists(self.ina3221x_dir)
        if not use_ina3221 and not use_ina3221x:
            raise EnergyMonError(errno.ENODEV, "no INA3221 driver found")
        names = self._resolve_rail_names()
        scan = self._open_rails(names, use_ina3221)
        try:
            delay = polling_delay_us(
                scan.interval_us, os.environ.get(INTERVAL_ENV_VAR)
            )
            self._scan = scan
            self.start_polling(delay)
        except BaseException:
            self._scan = None
            scan.close()
            raise

    def finish(self) -> None:
        if self._scan is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        self.stop_polling()
        scan, self._scan = self._scan, None
        scan.close()

    def energy_increment(self, elapsed_us: int) -> int:
        scan = self._scan
        if scan is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        sum_mw = 0
        for power_fd, mv_fd, ma_fd in zip(
            scan.power_fds, scan.voltage_fds, scan.current_fds
        ):
            if power_fd is not None:
                mw = _read_value(power_fd)
                if mw is not None:
                    sum_mw += mw
            elif mv_fd is not None and ma_fd is not None:
                mv = _read_value(mv_fd)
                if mv is not None:
                    ma = _read_value(ma_fd)
                    if ma is not None:
                        sum_mw += mv * ma // 1000
        return sum_mw * elapsed_us // 1000

    def source(self) -> str:
        return "NVIDIA Jetson INA3221 Power Monitors"

    def precision(self) -> int:
        # milliwatts at the refresh interval
        return self.interval() // 1000 or 1

    def is_exclusive(self) -> bool:
        return False