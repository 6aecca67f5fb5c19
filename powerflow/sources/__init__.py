"""Auxiliary telemetry sources outside the embedded controller."""

from .battery_info import (
    BatteryInfo,
    BatteryInfoReader,
    CapacityUnits,
    PowerTelemetry,
    StaticPropertySource,
    infer_capacity_units,
    parse_battery_info,
    percent_from_capacity,
)
from .sensors import (
    CoolingDeviceLevelSource,
    GenericTemperatureReader,
    ThermalPressure,
    ThermalPressureReader,
    TimeRemainingReader,
)
from .sysfs import SysfsPropertySource

__all__ = [
    "BatteryInfo",
    "BatteryInfoReader",
    "CapacityUnits",
    "PowerTelemetry",
    "StaticPropertySource",
    "infer_capacity_units",
    "parse_battery_info",
    "percent_from_capacity",
    "CoolingDeviceLevelSource",
    "GenericTemperatureReader",
    "ThermalPressure",
    "ThermalPressureReader",
    "TimeRemainingReader",
    "SysfsPropertySource",
]
