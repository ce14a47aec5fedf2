"""Energy readings from x86 RAPL model-specific registers."""

from __future__ import annotations

import errno
import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from energymon.core import EnergyMon, EnergyMonError

_log = logging.getLogger(__name__)

ENV_VAR = "ENERGYMON_MSRS"
DELIMS = ", :;|"
DEFAULT_DEV_DIR = "/dev/cpu"

MSR_RAPL_POWER_UNIT = 0x606
# Package RAPL domain
MSR_PKG_ENERGY_STATUS = 0x611
# PP0 RAPL domain
MSR_PP0_ENERGY_STATUS = 0x639
# PP1 RAPL domain, may reflect to uncore devices
MSR_PP1_ENERGY_STATUS = 0x641
# DRAM RAPL domain
MSR_DRAM_ENERGY_STATUS = 0x619

_UINT32_MAX = 0xFFFF_FFFF
_SPLIT = re.compile("[" + re.escape(DELIMS) + "]+")


def parse_cpu_list(text: str) -> tuple[str, ...]:
    """Split a list of CPU ids separated by any of ``", :;|"``."""
    cpus = tuple(token for token in _SPLIT.split(text) if token)
    if not cpus:
        raise EnergyMonError(
            errno.EINVAL, f"Parsing number of cores from {ENV_VAR} env var"
        )
    return cpus


def energy_units(raw: int) -> float:
    """Return the energy unit in joules encoded in a RAPL power-unit register.

    The unit is 1/2^ESU, where ESU is held in bits 12:8.
    """
    status_units = (raw >> 8) & 0x1F
    return 1.0 / (1 << status_units)


@dataclass
class _Msr:
    fd: int
    units: float
    n_overflow: int = 0
    energy_last: int = 0


def _read_u64(fd: int, offset: int) -> int | None:
    data = os.pread(fd, 8, offset)
    if len(data) != 8:
        return None
    return int.from_bytes(data, "little")


def _open_msr(dev_dir: Path, cpu: str) -> int:
    base = dev_dir / cpu
    try:
        return os.open(base / "msr_safe", os.O_RDONLY)
    except OSError:
        return os.open(base / "msr", os.O_RDONLY)


class MsrEnergyMon(EnergyMon):
    """Reads the package energy counter of one or more CPUs.

    When ``cpus`` is None, the list comes from the ``ENERGYMON_MSRS``
    environment variable at ``init``, and CPU 0 is used if it is unset.
    """

    def __init__(
        self,
        cpus: str | Iterable[str | int] | None = None,
        dev_dir: str | os.PathLike[str] = DEFAULT_DEV_DIR,
    ) -> None:
        self.cpus = cpus
        self.dev_dir = Path(dev_dir)
        self._msrs: list[_Msr] | None = None

    def _resolve_cpus(self) -> tuple[str, ...]:
        if self.cpus is None:
            text = os.environ.get(ENV_VAR)
            return ("0",) if text is None else parse_cpu_list(text)
        if isinstance(self.cpus, str):
            return parse_cpu_list(self.cpus)
        cpus = tuple(str(cpu) for cpu in self.cpus)
        if not cpus:
            raise EnergyMonError(errno.EINVAL, "no CPUs given")
        return cpus

    def init(self) -> None:
        if self._msrs is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        cpus = self._resolve_cpus()
        msrs: list[_Msr] = []
        try:
            for cpu in cpus:
                fd = _open_msr(self.dev_dir, cpu)
                try:
                    raw = _read_u64(fd, MSR_RAPL_POWER_UNIT)
                    if raw is None:
                        raise EnergyMonError(
                            errno.EIO, f"short read of power units for cpu {cpu}"
                        )
                except BaseException:
                    os.close(fd)
                    raise
                msrs.append(_Msr(fd, energy_units(raw)))
        except BaseException:
            for msr in msrs:
                try:
                    os.close(msr.fd)
                except OSError:
                    pass
            raise
        self._msrs = msrs

    def _require_init(self) -> list[_Msr]:
        if self._msrs is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        return self._msrs

    def read_total(self) -> int:
        total = 0
        for msr in self._require_init():
            raw = _read_u64(msr.fd, MSR_PKG_ENERGY_STATUS)
            if raw is None:
                continue
            # bits 31:0 hold the counter, which overflows at 32 bits
            value = raw & 0xFFFF_FFFF
            if value < msr.energy_last:
                msr.n_overflow += 1
            msr.energy_last = value
            total += int(
                float(value + msr.n_overflow * _UINT32_MAX) * msr.units * 1_000_000.0
            )
        return total

    def finish(self) -> None:
        msrs = self._require_init()
        self._msrs = None
        first_error: OSError | None = None
        for msr in msrs:
            try:
                os.close(msr.fd)
            except OSError as exc:
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def source(self) -> str:
        return "X86 MSR"

    def interval(self) -> int:
        return 1000

    def precision(self) -> int:
        msrs = self._require_init()
        # limited by the largest units (they should all be the same)
        units = max((msr.units for msr in msrs), default=0.0)
        return int(units * 1_000_000)

    def is_exclusive(self) -> bool:
        return False