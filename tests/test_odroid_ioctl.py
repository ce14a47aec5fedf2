import errno
from unittest import mock

import pytest

from energymon.core import EnergyMonError
from energymon.odroid_ioctl import (
    INA231_IOCGREG,
    INA231_IOCGSTATUS,
    INA231_IOCSSTATUS,
    Ina231Reg,
    OdroidIoctlEnergyMon,
    SENSOR_POLL_DELAY_US_DEFAULT,
)


class FakeDriver:
    def __init__(self, enabled=0, power_uw=0, fail_read=False):
        self.enabled = enabled
        self.power_uw = power_uw
        self.fail_read = fail_read
        self.set_calls = []
        self.requests = []

    def __call__(self, fd, request, buf, mutate=True):
        self.requests.append(request)
        if request == INA231_IOCGSTATUS:
            buf[:] = Ina231Reg("sensor", self.enabled).pack()
        elif request == INA231_IOCSSTATUS:
            self.set_calls.append(Ina231Reg.unpack(bytes(buf)))
        elif request == INA231_IOCGREG:
            if self.fail_read:
                raise OSError(errno.EIO, "I/O error")
            reg = Ina231Reg.unpack(bytes(buf))
            reg.cur_uW = self.power_uw
            buf[:] = reg.pack()
        else:
            raise OSError(errno.ENOTTY, "bad request")
        return 0


@pytest.fixture
def devices(tmp_path):
    paths = []
    for name in ("sensor_arm", "sensor_kfc"):
        path = tmp_path / name
        path.write_bytes(b"")
        paths.append(path)
    return paths


def test_reg_round_trip():
    reg = Ina231Reg("arm", 1, 5, 6, 7)
    assert Ina231Reg.unpack(reg.pack()) == reg


def test_reg_size_matches_packed_length():
    assert len(Ina231Reg().pack()) == Ina231Reg.SIZE


def test_reg_name_truncated_to_field():
    reg = Ina231Reg.unpack(Ina231Reg("x" * 30).pack())
    assert reg.name == "x" * 20


def test_init_issues_encoded_requests(tmp_path):
    device = tmp_path / "sensor_arm"
    device.write_bytes(b"")
    driver = FakeDriver(enabled=0)
    mon = OdroidIoctlEnergyMon([device])
    with mock.patch("fcntl.ioctl", side_effect=driver):
        mon.init()
        try:
            assert driver.requests[:2] == [INA231_IOCGSTATUS, INA231_IOCSSTATUS]
            assert mon.interval() == SENSOR_POLL_DELAY_US_DEFAULT
        finally:
            mon.finish()
    get_status, set_status = driver.requests[:2]
    assert get_status & 0xFF == 3
    assert set_status & 0xFF == 2
    assert INA231_IOCGREG & 0xFF == 1
    assert (INA231_IOCGREG >> 8) & 0xFF == ord("i")
    assert INA231_IOCGREG >> 30 == 2
    assert set_status >> 30 == 1


def test_init_enables_disabled_sensors(devices):
    driver = FakeDriver(enabled=0)
    mon = OdroidIoctlEnergyMon(devices)
    with mock.patch("fcntl.ioctl", side_effect=driver):
        mon.init()
        try:
            assert len(driver.set_calls) == len(devices)
            assert all(reg.enable == 1 for reg in driver.set_calls)
        finally:
            mon.finish()


def test_init_leaves_enabled_sensors(devices):
    driver = FakeDriver(enabled=1)
    mon = OdroidIoctlEnergyMon(devices)
    with mock.patch("fcntl.ioctl", side_effect=driver):
        with mon:
            assert driver.set_calls == []
            assert mon.interval() == SENSOR_POLL_DELAY_US_DEFAULT
            assert mon.precision() == 1
            assert mon.read_total() >= 0


def test_energy_increment_sums_power(tmp_path):
    device = tmp_path / "sensor_arm"
    device.write_bytes(b"")
    driver = FakeDriver(enabled=1, power_uw=2_000_000)
    mon = OdroidIoctlEnergyMon([device])
    with mock.patch("fcntl.ioctl", side_effect=driver):
        with mon:
            assert mon.energy_increment(1_000_000) == 2_000_000
            assert mon.energy_increment(0) == 0


def test_energy_increment_read_error(devices):
    driver = FakeDriver(enabled=1, fail_read=True)
    mon = OdroidIoctlEnergyMon(devices)
    with mock.patch("fcntl.ioctl", side_effect=driver):
        with mon:
            with pytest.raises(OSError):
                mon.energy_increment(1000)


def test_missing_device(tmp_path):
    mon = OdroidIoctlEnergyMon([tmp_path / "absent"])
    with pytest.raises(FileNotFoundError):
        mon.init()


def test_not_initialized():
    mon = OdroidIoctlEnergyMon([])
    with pytest.raises(EnergyMonError) as info:
        mon.finish()
    assert info.value.errno == errno.EINVAL
    with pytest.raises(EnergyMonError):
        mon.energy_increment(10)


def test_source():
    assert OdroidIoctlEnergyMon([]).source() == "ODROID INA231 Power Sensors via ioctl"
    assert OdroidIoctlEnergyMon([]).is_exclusive() is False