"""Published data model: the power snapshot and the display configuration."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .balance import is_balance_consistent, power_balance_mismatch
from .registers.reader import PowerReadingSet
from .sources.battery_info import AdapterInfo, BatteryDetails, PowerTelemetry
from .sources.sensors import ThermalPressure

MINIMUM_UPDATE_INTERVAL = 1.5
DEFAULT_STATUS_BAR_FORMAT = "{power} | {battery}"


class StatusBarItem(str, Enum):
    SYSTEM = "system"
    SCREEN = "screen"
    HEATPIPE = "heatpipe"

    @property
    def label(self) -> str:
        return {
            StatusBarItem.SYSTEM: "System Power",
            StatusBarItem.SCREEN: "Screen Power",
            StatusBarItem.HEATPIPE: "Package Power",
        }[self]


@dataclass(frozen=True)
class PowerSettings:
    """Display configuration handed over by the presentation layer."""

    update_interval_seconds: float = 2.0
    status_bar_item: StatusBarItem = StatusBarItem.SYSTEM
    show_charging_power: bool = True
    status_bar_format: str = DEFAULT_STATUS_BAR_FORMAT

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "PowerSettings":
        sampling = config.get("sampling", {})
        display = config.get("display", {})
        try:
            item = StatusBarItem(display.get("status_bar_item", StatusBarItem.SYSTEM.value))
        except ValueError:
            item = StatusBarItem.SYSTEM
        return cls(
            update_interval_seconds=float(sampling.get("interval", 2.0)),
            status_bar_item=item,
            show_charging_power=bool(display.get("show_charging_power", True)),
            status_bar_format=str(display.get("status_bar_format", DEFAULT_STATUS_BAR_FORMAT)),
        ).clamped()

    def clamped(self) -> "PowerSettings":
        if self.update_interval_seconds >= MINIMUM_UPDATE_INTERVAL:
            return self
        return replace(self, update_interval_seconds=MINIMUM_UPDATE_INTERVAL)

    @property
    def effective_interval(self) -> float:
        return max(self.update_interval_seconds, MINIMUM_UPDATE_INTERVAL)

    def resolved_format(self) -> str:
        trimmed = self.status_bar_format.strip()
        return trimmed or DEFAULT_STATUS_BAR_FORMAT


@dataclass(frozen=True)
class PowerDiagnostics:
    """Raw per-source values behind a snapshot, for display only."""

    readings: PowerReadingSet = field(default_factory=PowerReadingSet)
    telemetry: PowerTelemetry | None = None


@dataclass(frozen=True)
class PowerSnapshot:
    """One reconciled reading of the machine's power flow.

    Battery power is signed: positive while charging. Fields that may be
    legitimately absent are None (or carry an ``*_available`` flag); zero is
    always a real reading.
    """

    timestamp: float
    is_charging: bool = False
    is_external_power_connected: bool = False
    battery_level: int = 0
    battery_level_precise: float = 0.0
    # Both levels read 0 when nothing reported a charge level
    battery_level_available: bool = False
    time_remaining_minutes: int | None = None
    system_in: float = 0.0
    system_load: float = 0.0
    battery_power: float = 0.0
    battery_power_source: str = "none"
    battery_charging: bool = False
    adapter_power: float = 0.0
    adapter_input_voltage: float | None = None
    adapter_input_current: float | None = None
    adapter_input_power: float | None = None
    efficiency_loss: float = 0.0
    screen_power: float = 0.0
    screen_power_available: bool = False
    package_power: float = 0.0
    package_power_key: str | None = None
    adapter_watts: float = 0.0
    adapter_voltage: float = 0.0
    adapter_amperage: float = 0.0
    adapter_info: AdapterInfo | None = None
    battery_details: BatteryDetails | None = None
    temperature_c: float | None = None
    temperature_source: str | None = None
    battery_temperature_c: float | None = None
    battery_health_percent: float | None = None
    battery_remaining_wh: float | None = None
    battery_current_ma: float | None = None
    battery_voltage_mv: float | None = None
    battery_cell_voltages: tuple[float, ...] = ()
    battery_cycle_count: int | None = None
    battery_percent_register: int | None = None
    lid_closed: bool | None = None
    platform_name: str | None = None
    thermal_pressure: ThermalPressure | None = None
    diagnostics: PowerDiagnostics = field(default_factory=PowerDiagnostics)

    @classmethod
    def empty(cls, timestamp: float | None = None) -> "PowerSnapshot":
        return cls(timestamp=timestamp if timestamp is not None else time.time())

    @property
    def package_power_available(self) -> bool:
        return self.package_power_key is not None

    @property
    def is_on_external_power(self) -> bool:
        return self.is_charging or self.is_external_power_connected

    @property
    def is_charging_active(self) -> bool:
        if self.is_charging:
            return True
        return self.diagnostics.readings.charging_status > 0.5

    @property
    def power_state_label(self) -> str:
        if self.is_charging:
            return "Charging"
        if self.is_external_power_connected:
            return "On Power"
        return "On Battery"

    @property
    def package_power_label(self) -> str:
        if self.package_power_key is not None and self.package_power_key.startswith("PC"):
            return "CPU Package"
        return "Heatpipe"

    @property
    def power_balance_mismatch(self) -> float:
        return power_balance_mismatch(self.system_in, self.system_load, self.battery_power)

    @property
    def is_power_balance_consistent(self) -> bool:
        return is_balance_consistent(self.system_in, self.system_load, self.battery_power)

    @property
    def max_fan_percent(self) -> float | None:
        values = [f.percent_max for f in self.diagnostics.readings.fan_readings if f.percent_max is not None]
        return max(values) if values else None


__all__ = [
    "AdapterInfo",
    "BatteryDetails",
    "PowerDiagnostics",
    "PowerSettings",
    "PowerSnapshot",
    "StatusBarItem",
    "ThermalPressure",
    "MINIMUM_UPDATE_INTERVAL",
]
