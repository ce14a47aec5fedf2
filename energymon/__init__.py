"""A common interface for reading energy from hardware sensors.

Backends live in the submodules dummy, cray_pm, msr, odroid, odroid_ioctl
and jetson; the shared interface is in core.
"""

__version__ = "0.1.0"