"""A monitor that reads from no source at all."""

from __future__ import annotations

from energymon.core import EnergyMon


class DummyEnergyMon(EnergyMon):
    """Always reports zero energy."""

    def init(self) -> None:
        """Nothing to set up."""

    def read_total(self) -> int:
        return 0

    def finish(self) -> None:
        """Nothing to release."""

    def source(self) -> str:
        return "Dummy Source"

    def interval(self) -> int:
        return 1

    def precision(self) -> int:
        return 1

    def is_exclusive(self) -> bool:
        return False


def get_default() -> EnergyMon:
    """Return the default energy monitor."""
    return DummyEnergyMon()