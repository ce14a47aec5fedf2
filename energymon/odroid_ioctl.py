"""Energy estimates for ODROID boards, reading INA231 sensors through ioctl."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import struct
from collections.abc import Iterable
from dataclasses import dataclass, field

from energymon.core import EnergyMonError
from energymon.polling import PollingEnergyMon

_log = logging.getLogger(__name__)

SENSOR_POLL_DELAY_US_DEFAULT = 263_808

DEV_SENSORS = (
    "/dev/sensor_arm",  # big cluster
    "/dev/sensor_kfc",  # LITTLE cluster
    "/dev/sensor_mem",  # memory
    "/dev/sensor_g3d",  # GPU
)

_IOC_WRITE = 1
_IOC_READ = 2
_NAME_LEN = 20
_REG_FORMAT = "=20s4I"


def _ioc(direction: int, nr: int) -> int:
    # the driver encodes the size of a pointer, not of the structure
    size = struct.calcsize("P")
    return (direction << 30) | (size << 16) | (ord("i") << 8) | nr


INA231_IOCGREG = _ioc(_IOC_READ, 1)
INA231_IOCSSTATUS = _ioc(_IOC_WRITE, 2)
INA231_IOCGSTATUS = _ioc(_IOC_READ, 3)


@dataclass
class Ina231Reg:
    """The register block exchanged with the INA231 driver."""

    name: str = ""
    enable: int = 0
    cur_uV: int = 0
    cur_uA: int = 0
    cur_uW: int = 0

    SIZE = struct.calcsize(_REG_FORMAT)

    def pack(self) -> bytes:
        """Return the structure as the driver expects it."""
        raw_name = self.name.encode("ascii", "replace")[:_NAME_LEN]
        return struct.pack(
            _REG_FORMAT, raw_name, self.enable, self.cur_uV, self.cur_uA, self.cur_uW
        )

    @classmethod
    def unpack(cls, data: bytes) -> Ina231Reg:
        """Build a structure from bytes filled in by the driver."""
        raw_name, enable, cur_uv, cur_ua, cur_uw = struct.unpack(
            _REG_FORMAT, bytes(data[: cls.SIZE])
        )
        name = raw_name.split(b"\0", 1)[0].decode("ascii", "replace")
        return cls(name, enable, cur_uv, cur_ua, cur_uw)


def _ioctl(fd: int, request: int, reg: Ina231Reg) -> Ina231Reg:
    buf = bytearray(reg.pack())
    fcntl.ioctl(fd, request, buf, True)
    return Ina231Reg.unpack(bytes(buf))


@dataclass
class _Sensor:
    path: str
    fd: int
    reg: Ina231Reg = field(default_factory=Ina231Reg)


class OdroidIoctlEnergyMon(PollingEnergyMon):
    """Integrates the power readings of the INA231 device files."""

    def __init__(self, devices: Iterable[str | os.PathLike[str]] = DEV_SENSORS) -> None:
        super().__init__()
        self.devices = tuple(os.fspath(device) for device in devices)
        self._sensors: list[_Sensor] | None = None

    def init(self) -> None:
        if self._sensors is not None:
            raise EnergyMonError(errno.EINVAL, "energymon is already initialized")
        sensors: list[_Sensor] = []
        try:
            for path in self.devices:
                sensor = _Sensor(path, os.open(path, os.O_RDWR))
                sensors.append(sensor)
                try:
                    sensor.reg = _ioctl(sensor.fd, INA231_IOCGSTATUS, sensor.reg)
                    if not sensor.reg.enable:
                        sensor.reg.enable = 1
                        _ioctl(sensor.fd, INA231_IOCSSTATUS, sensor.reg)
                except OSError as exc:
                    raise EnergyMonError(
                        exc.errno or errno.EIO, f"{path}: {exc.strerror or exc}"
                    ) from exc
            self._sensors = sensors
            self.start_polling(SENSOR_POLL_DELAY_US_DEFAULT)
        except BaseException:
            self._sensors = None
            _close_all(sensors)
            raise

    def finish(self) -> None:
        if self._sensors is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        self.stop_polling()
        sensors, self._sensors = self._sensors, None
        error = _close_all(sensors)
        if error is not None:
            raise error

    def energy_increment(self, elapsed_us: int) -> int:
        sensors = self._sensors
        if sensors is None:
            raise EnergyMonError(errno.EINVAL, "energymon is not initialized")
        sum_uw = 0
        for sensor in sensors:
            sensor.reg = _ioctl(sensor.fd, INA231_IOCGREG, sensor.reg)
            sum_uw += sensor.reg.cur_uW
        return sum_uw * elapsed_us // 1_000_000

    def source(self) -> str:
        return "ODROID INA231 Power Sensors via ioctl"

    def precision(self) -> int:
        # microwatts at the refresh interval
        return self.interval() // 1_000_000 or 1

    def is_exclusive(self) -> bool:
        return False


def _close_all(sensors: Iterable[_Sensor]) -> OSError | None:
    first_error: OSError | None = None
    for sensor in sensors:
        try:
            os.close(sensor.fd)
        except OSError as exc:
            _log.warning("%s: %s", sensor.path, exc)
            first_error = first_error or exc
    return first_error