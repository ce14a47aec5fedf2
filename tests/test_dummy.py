from energymon.dummy import DummyEnergyMon, get_default


def test_source():
    assert DummyEnergyMon().source() == "Dummy Source"


def test_read_total_is_zero_after_init():
    mon = DummyEnergyMon()
    mon.init()
    assert mon.read_total() == 0
    mon.finish()


def test_interval_and_precision():
    mon = DummyEnergyMon()
    assert mon.interval() == 1
    assert mon.precision() == 1


def test_not_exclusive():
    assert DummyEnergyMon().is_exclusive() is False


def test_context_manager():
    with DummyEnergyMon() as mon:
        assert mon.read_total() == 0


def test_repeated_init_allowed():
    mon = DummyEnergyMon()
    mon.init()
    mon.init()
    assert mon.read_total() == 0


def test_get_default_is_dummy():
    mon = get_default()
    assert isinstance(mon, DummyEnergyMon)
    assert mon.source() == "Dummy Source"