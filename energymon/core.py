"""Common energy monitor interface and shared helpers."""

from __future__ import annotations

import abc
import errno


class EnergyMonError(OSError):
    """Raised when an energy monitor operation fails.

    Carries an ``errno`` value like any other ``OSError``.
    """


def bounded_copy(src: str | None, n: int) -> str:
    """Return at most ``n - 1`` characters of ``src``, stopping at a NUL.

    Mirrors copying into a NUL-terminated buffer that holds ``n`` characters.
    """
    if src is None:
        raise EnergyMonError(errno.EINVAL, "source string must not be None")
    if n < 0:
        raise ValueError("buffer size must not be negative")
    text = src.split("\0", 1)[0]
    if len(text) < n:
        return text
    if n > 0:
        return text[: n - 1]
    return ""


class EnergyMon(abc.ABC):
    """An energy reader.

    Typical use: create, ``init()``, ``read_total()`` as often as needed,
    then ``finish()``.  Instances are also context managers.
    """

    @abc.abstractmethod
    def init(self) -> None:
        """Open files, start background tasks and so on."""

    @abc.abstractmethod
    def read_total(self) -> int:
        """Return the total energy in microjoules."""

    @abc.abstractmethod
    def finish(self) -> None:
        """Stop background tasks and release resources."""

    @abc.abstractmethod
    def source(self) -> str:
        """Return a human-readable description of the energy source."""

    @abc.abstractmethod
    def interval(self) -> int:
        """Return the refresh interval of the sensors in microseconds."""

    @abc.abstractmethod
    def precision(self) -> int:
        """Return the best read precision in microjoules (0 if unknown)."""

    def is_exclusive(self) -> bool:
        """Return whether exclusive access to the sensors is required."""
        return False

    def __enter__(self) -> EnergyMon:
        self.init()
        return self

    def __exit__(self, *args) -> None:
        self.finish()