import errno
import os

import pytest

from energymon.core import EnergyMonError
from energymon.jetson_sysfs import (
    RailScan,
    ina3221_exists,
    ina3221_walk,
    ina3221x_exists,
    ina3221x_walk,
    is_dir,
    is_i2c_bus_addr_dir,
    read_long,
    read_string,
)


def make_ina3221_device(base, bus, hwmon, labels, interval_ms=None):
    dev = base / bus / "hwmon" / hwmon
    dev.mkdir(parents=True)
    for channel, label in enumerate(labels, start=1):
        (dev / f"in{channel}_label").write_text(label + "\n")
        (dev / f"in{channel}_input").write_text(f"mv{channel}\n")
        (dev / f"curr{channel}_input").write_text(f"ma{channel}\n")
    if interval_ms is not None:
        (dev / "update_interval").write_text(f"{interval_ms}\n")
    return dev


def make_ina3221x_device(base, bus, device, rails, delay_text=None):
    dev = base / bus / device
    dev.mkdir(parents=True)
    for channel, rail in rails.items():
        (dev / f"rail_name_{channel}").write_text(rail + "\n")
        (dev / f"in_power{channel}_input").write_text(f"mw{channel}\n")
        if delay_text is not None:
            (dev / f"polling_delay_{channel}").write_text(delay_text)
    return dev


def fd_content(fd):
    return os.pread(fd, 64, 0)


def test_is_dir(tmp_path):
    assert is_dir(tmp_path) is True
    assert is_dir(tmp_path / "absent") is False


def test_read_string_strips_newline(tmp_path):
    path = tmp_path / "label"
    path.write_text("VDD_IN\nextra")
    assert read_string(path) == "VDD_IN"


def test_read_long_bases(tmp_path):
    path = tmp_path / "value"
    path.write_text("0x10\n")
    assert read_long(path) == 16
    path.write_text("  42 ms\n")
    assert read_long(path) == 42
    path.write_text("-7")
    assert read_long(path) == -7


def test_read_long_errors(tmp_path):
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    with pytest.raises(EnergyMonError):
        read_long(empty)
    with pytest.raises(FileNotFoundError):
        read_long(tmp_path / "absent")


def test_is_i2c_bus_addr_dir(tmp_path):
    for name in ("1-0040", ".hidden", "ab", "1-"):
        (tmp_path / name).mkdir()
    (tmp_path / "2-0041").write_text("file")
    with os.scandir(tmp_path) as entries:
        found = sorted(e.name for e in entries if is_i2c_bus_addr_dir(e))
    assert found == ["1-0040"]


def test_exists(tmp_path):
    assert ina3221_exists(tmp_path) is True
    assert ina3221x_exists(tmp_path / "absent") is False


def test_ina3221_walk_finds_rails(tmp_path):
    make_ina3221_device(tmp_path, "1-0040", "hwmon1", ["VDD_IN", "NC", "VDD_MUX"], 5)
    with ina3221_walk(["VDD_MUX", "VDD_IN", "GPU"], tmp_path) as scan:
        assert fd_content(scan.voltage_fds[0]) == b"mv3\n"
        assert fd_content(scan.current_fds[0]) == b"ma3\n"
        assert fd_content(scan.voltage_fds[1]) == b"mv1\n"
        assert scan.voltage_fds[2] is None
        assert scan.current_fds[2] is None
        assert scan.power_fds == [None, None, None]
        assert scan.interval_us == 5000


def test_ina3221_walk_keeps_largest_interval(tmp_path):
    make_ina3221_device(tmp_path, "1-0040", "hwmon1", ["A", "B", "C"], 2)
    make_ina3221_device(tmp_path, "1-0041", "hwmon2", ["D", "E", "F"], 9)
    with ina3221_walk(["A", "D"], tmp_path) as scan:
        assert scan.interval_us == 9000


def test_ina3221_walk_without_interval_file(tmp_path):
    make_ina3221_device(tmp_path, "1-0040", "hwmon1", ["A", "B", "C"])
    with ina3221_walk(["A"], tmp_path) as scan:
        assert scan.interval_us == 0
        assert scan.voltage_fds[0] is not None


def test_ina3221_walk_duplicate_name(tmp_path):
    make_ina3221_device(tmp_path, "1-0040", "hwmon1", ["A", "B", "C"])
    make_ina3221_device(tmp_path, "1-0041", "hwmon1", ["A", "E", "F"])
    with pytest.raises(EnergyMonError) as info:
        ina3221_walk(["A"], tmp_path)
    assert info.value.errno == errno.EEXIST


def test_ina3221_walk_missing_label(tmp_path):
    dev = make_ina3221_device(tmp_path, "1-0040", "hwmon1", ["A", "B", "C"])
    (dev / "in3_label").unlink()
    with pytest.raises(FileNotFoundError):
        ina3221_walk(["A"], tmp_path)


def test_ina3221_walk_missing_driver_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        ina3221_walk(["A"], tmp_path / "absent")


def test_ina3221x_walk_finds_rails(tmp_path):
    make_ina3221x_device(
        tmp_path, "6-0040", "iio:device0", {0: "VDD_IN", 2: "VDD_SYS_CPU"}, "50 ms\n"
    )
    with ina3221x_walk(["VDD_SYS_CPU", "VDD_IN", "GPU"], tmp_path) as scan:
        assert fd_content(scan.power_fds[0]) == b"mw2\n"
        assert fd_content(scan.power_fds[1]) == b"mw0\n"
        assert scan.power_fds[2] is None
        assert scan.voltage_fds == [None, None, None]
        assert scan.interval_us == 50_000


def test_ina3221x_walk_ignores_short_device_names(tmp_path):
    make_ina3221x_device(tmp_path, "6-0040", "device0", {0: "VDD_IN"})
    with ina3221x_walk(["VDD_IN"], tmp_path) as scan:
        assert scan.power_fds == [None]


def test_ina3221x_walk_duplicate_name(tmp_path):
    make_ina3221x_device(tmp_path, "6-0040", "iio:device0", {0: "X", 1: "X"})
    with pytest.raises(EnergyMonError) as info:
        ina3221x_walk(["X"], tmp_path)
    assert info.value.errno == errno.EEXIST


def test_rail_scan_close_clears(tmp_path):
    make_ina3221x_device(tmp_path, "6-0040", "iio:device0", {1: "R"})
    scan = ina3221x_walk(["R"], tmp_path)
    fd = scan.power_fds[0]
    scan.close()
    assert scan.power_fds == [None]
    with pytest.raises(OSError):
        os.fstat(fd)


def test_rail_scan_defaults():
    scan = RailScan(("a", "b"))
    assert scan.voltage_fds == [None, None]
    assert scan.current_fds == [None, None]
    assert scan.power_fds == [None, None]
    assert scan.interval_us == 0