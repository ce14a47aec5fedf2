# energymon

A small library with one interface for reading total energy use, in
microjoules, from several kinds of power and energy sensors on Linux.

Each backend is a subclass of `energymon.core.EnergyMon` with the same
lifecycle:

1. create the monitor,
2. `init()` it, which opens files and starts background polling if the backend needs it,
3. call `read_total()`, `interval()`, `precision()`, `source()` and
   `is_exclusive()` as often as needed,
4. `finish()` it.

Monitors are also context managers: entering a `with` block calls `init()`
and leaving it calls `finish()`.

Failures raise `OSError`. The package's own checks (using a monitor that is
not initialized, initializing it twice, bad settings, missing sensors) raise
`EnergyMonError`, a subclass of `OSError` that carries an `errno` value.

## Backends

| Module | Class | Reads from |
| --- | --- | --- |
| `energymon.dummy` | `DummyEnergyMon` | nothing; always reports 0 |
| `energymon.cray_pm` | `CrayPmCounterMon`, `CrayPmMon` | Cray PM counter files (`energy`, `accel_energy`, `cpu_energy`, `memory_energy`) |
| `energymon.msr` | `MsrEnergyMon` | x86 RAPL package energy registers (`/dev/cpu/N/msr_safe` or `/dev/cpu/N/msr`) |
| `energymon.odroid` | `OdroidEnergyMon` | ODROID INA231 sensors in sysfs |
| `energymon.odroid_ioctl` | `OdroidIoctlEnergyMon` | ODROID INA231 sensors through device ioctls |
| `energymon.jetson` | `JetsonEnergyMon` | NVIDIA Jetson INA3221 power rails |

`energymon.dummy.get_default()` returns a `DummyEnergyMon`.

`CrayPmMon` sums several counters and rereads them until the `freshness`
file is the same before and after, so the counters are not read in the middle
of an update.

Backends that only report power (ODROID and Jetson) are subclasses of
`energymon.polling.PollingEnergyMon`. They sample their sensors on a
background thread and add power × elapsed time into a running energy total.
A failed sample is skipped and logged as a warning through `logging`.
`energymon.jetson_sysfs` holds the sysfs discovery of Jetson rails
(`ina3221_walk`, `ina3221x_walk`, `RailScan`), and `energymon.ptime` holds
the clock and sleep helpers the polling thread uses.

Most constructors take a base directory or device paths, so the backends can
be pointed at a copy of the sysfs tree.

## Usage

```python
from energymon.dummy import get_default

with get_default() as em:
    print(em.source())
    print(em.read_total(), "uJ")
    print("refresh interval:", em.interval(), "us")
    print("precision:", em.precision(), "uJ")
```

Reading the sum of some Cray PM counters:

```python
from energymon.cray_pm import CrayPmMon, parse_counters

with CrayPmMon(parse_counters("cpu_energy,memory_energy")) as em:
    before = em.read_total()
    ...  # do some work
    print("used", em.read_total() - before, "uJ")
```

Reading RAPL package energy on a set of CPUs (the device files usually need
root, or the `msr_safe` driver):

```python
from energymon.msr import MsrEnergyMon, parse_cpu_list

with MsrEnergyMon(parse_cpu_list("0,4")) as em:
    print(em.read_total())
```

## Environment variables

Several backends read their settings from the environment at `init()` when
they are not given directly:

- `ENERGYMON_CRAY_PM_COUNTERS`: comma-separated Cray PM counter names, used by
  `CrayPmMon` when no counters are given.
- `ENERGYMON_MSRS`: CPU ids whose registers to read, separated by any of
  `, :;|`; used by `MsrEnergyMon` when no CPUs are given (default `0`).
- `ENERGYMON_JETSON_RAIL_NAMES`: comma-separated Jetson rail names, used when
  no rail names are given. Without it, a known default set of rails is looked for.
- `ENERGYMON_JETSON_INTERVAL_US`: Jetson polling interval in microseconds
  (never below 1000).

## What it does not do

This is a library only. There is no command-line program, no background
service, and no way to share readings between processes. It reads Linux
sysfs and device files directly and needs the matching drivers and hardware
to give real readings.

## Running the tests

```
pip install -e ".[test]"
pytest
```