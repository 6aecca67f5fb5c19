"""Secondary sensors: thermal pressure, generic temperature and time remaining."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import psutil

from ..constants import MAX_PLAUSIBLE_TEMPERATURE_C

logger = logging.getLogger(__name__)

# psutil sensor groups that carry CPU die/package temperatures
CPU_SENSOR_GROUPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "cpu-thermal", "acpitz")


@dataclass(frozen=True)
class ThermalPressure:
    level: int

    @property
    def label(self) -> str:
        if self.level == 0:
            return "Nominal"
        if self.level == 1:
            return "Moderate"
        if self.level == 2:
            return "Heavy"
        if self.level in (3, 4):
            return "Critical"
        return "Unknown"

    @property
    def display_value(self) -> str:
        return self.label if self.label == "Unknown" else f"{self.label} ({self.level})"

    @property
    def is_nominal(self) -> bool:
        return self.level == 0


class CoolingDeviceLevelSource:
    """Thermal-pressure level from a kernel cooling device.

    ``cur_state / max_state`` of e.g. ``/sys/class/thermal/cooling_device0``
    is bucketed onto levels 0-3.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def __call__(self) -> int | None:
        try:
            current = int((self.path / "cur_state").read_text().strip())
            maximum = int((self.path / "max_state").read_text().strip())
        except (OSError, ValueError) as e:
            logger.debug(f"Cooling device {self.path} unreadable: {e}")
            return None
        if maximum <= 0 or current <= 0:
            return 0
        ratio = min(current / maximum, 1.0)
        if ratio < 0.34:
            return 1
        if ratio < 0.67:
            return 2
        return 3


class ThermalPressureReader:
    """Reads the platform thermal-pressure level from an injected source.

    The source is whatever the platform offers (a notification state, a
    cooling-device level); it returns an int or None. Without a source the
    reader always reports None.
    """

    def __init__(self, level_source: Callable[[], int | None] | None = None):
        self.level_source = level_source

    def read_pressure(self) -> ThermalPressure | None:
        if self.level_source is None:
            return None
        try:
            level = self.level_source()
        except Exception as e:
            logger.debug(f"Thermal pressure source failed: {e}")
            return None
        if level is None:
            return None
        return ThermalPressure(level=int(level))


class GenericTemperatureReader:
    """Hardware-independent CPU temperature from psutil sensor groups."""

    def read_cpu_temperature(self) -> float | None:
        try:
            groups = psutil.sensors_temperatures(fahrenheit=False)
        except (AttributeError, NotImplementedError):
            return None
        except OSError as e:
            logger.debug(f"Temperature sensors unavailable: {e}")
            return None

        max_temp = 0.0
        for name, entries in groups.items():
            if name not in CPU_SENSOR_GROUPS:
                continue
            for entry in entries:
                current = getattr(entry, "current", None)
                if current is None:
                    continue
                if max_temp < current < MAX_PLAUSIBLE_TEMPERATURE_C:
                    max_temp = float(current)
        return max_temp if max_temp > 0 else None


class TimeRemainingReader:
    """Estimated minutes to empty/full from the OS battery estimate."""

    def time_remaining_minutes(self) -> int | None:
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError):
            return None
        except OSError as e:
            logger.debug(f"Battery estimate unavailable: {e}")
            return None
        if battery is None:
            return None
        secs = battery.secsleft
        if secs is None or secs in (psutil.POWER_TIME_UNKNOWN, psutil.POWER_TIME_UNLIMITED) or secs <= 0:
            return None
        return int(secs // 60)
