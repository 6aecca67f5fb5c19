"""Register source reader: one tick's worth of embedded-controller values."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..constants import (
    BATTERY_CAPACITY_KEYS,
    BATTERY_PERCENT_KEYS,
    BATTERY_VOLTAGE_KEYS,
    CHARGE_CONTROL_KEYS,
    CPU_TEMPERATURE_KEYS,
    DISCHARGE_CONTROL_KEYS,
    MAX_FANS,
    PACKAGE_POWER_KEYS,
    BatteryKey,
    DetailLevel,
    PlatformKey,
    PowerKey,
)
from .decoder import RegisterValue, normalize_type_tag
from .probe import CapabilityCache, CpuTemperatureProbe
from .transport import RegisterTransport

logger = logging.getLogger(__name__)


class SwitchState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class ControlState:
    """Charge or discharge inhibit state with the key it was read from."""

    state: SwitchState = SwitchState.UNKNOWN
    key: str | None = None
    raw_hex: str | None = None

    @property
    def display_value(self) -> str:
        if self.key is None:
            return self.state.label
        if self.raw_hex:
            return f"{self.state.label} ({self.key} 0x{self.raw_hex})"
        return f"{self.state.label} ({self.key})"


@dataclass(frozen=True)
class FanReading:
    index: int
    rpm: float
    max_rpm: float | None = None
    min_rpm: float | None = None
    target_rpm: float | None = None
    mode_raw: int | None = None
    percent_max: float | None = None

    @property
    def mode_label(self) -> str | None:
        if self.mode_raw is None:
            return None
        return {0: "Auto", 1: "Manual"}.get(self.mode_raw, f"Mode {self.mode_raw}")


@dataclass(frozen=True)
class ReadHints:
    """Which optional registers the summary profile should include."""

    needs_screen_power: bool = False
    needs_package_power: bool = False
    needs_temperature: bool = False


@dataclass(frozen=True)
class PowerReadingSet:
    """Everything read from the controller on one tick.

    Built once per tick and never mutated afterwards. Each value has a
    matching ``has_*`` flag because an absent register and a register
    reading zero mean different things.
    """

    battery_rate: float = 0.0
    delivery_rate: float = 0.0
    system_total: float = 0.0
    package_power: float = 0.0
    package_power_key: str | None = None
    screen_power: float = 0.0
    full_charge_capacity: float = 0.0
    current_capacity: float = 0.0
    current_capacity_key: str | None = None
    design_capacity: float = 0.0
    battery_voltage: float = 0.0
    battery_voltage_key: str | None = None
    battery_percent: float = 0.0
    battery_percent_key: str | None = None
    battery_current: float = 0.0
    battery_cycle_count: int | None = None
    adapter_input_voltage: float = 0.0
    adapter_input_current: float = 0.0
    battery_cell_voltages: tuple[float, ...] = ()
    lid_closed: bool | None = None
    platform_name: str | None = None
    charging_status: float = 0.0
    time_to_empty: float = 0.0
    time_to_full: float = 0.0
    battery_temperature: float = 0.0
    cpu_temperature: float = 0.0
    cpu_temperature_key: str | None = None
    has_battery_rate: bool = False
    has_delivery_rate: bool = False
    has_system_total: bool = False
    has_package_power: bool = False
    has_screen_power: bool = False
    has_full_charge_capacity: bool = False
    has_current_capacity: bool = False
    has_design_capacity: bool = False
    has_battery_voltage: bool = False
    has_battery_percent: bool = False
    has_battery_current: bool = False
    has_adapter_input_voltage: bool = False
    has_adapter_input_current: bool = False
    has_battery_cell_voltages: bool = False
    has_charging_status: bool = False
    has_time_to_empty: bool = False
    has_time_to_full: bool = False
    has_battery_temperature: bool = False
    has_cpu_temperature: bool = False
    charging_control: ControlState = field(default_factory=ControlState)
    discharging_control: ControlState = field(default_factory=ControlState)
    fan_readings: tuple[FanReading, ...] = ()


class RegisterSourceReader:
    """Reads registers by symbolic key through a :class:`RegisterTransport`.

    Key metadata (byte width and type tag) is fetched once per key and cached;
    every later read goes straight to the value call. Any transport failure is
    a per-key miss, never an exception.
    """

    def __init__(
        self,
        transport: RegisterTransport,
        preferred_keys: dict[str, str] | None = None,
        cached_cpu_temperature_keys: list[str] | None = None,
        cpu_temperature_probe: CpuTemperatureProbe | None = None,
    ):
        self.transport = transport
        self._opened = False
        self._key_info_cache: dict[str, tuple[int, str]] = {}
        preferred_keys = preferred_keys or {}
        self.package_power = CapabilityCache(
            "package_power", PACKAGE_POWER_KEYS, preferred_keys.get("package_power")
        )
        self.battery_voltage = CapabilityCache(
            "battery_voltage", BATTERY_VOLTAGE_KEYS, preferred_keys.get("battery_voltage")
        )
        self.battery_percent = CapabilityCache(
            "battery_percent", BATTERY_PERCENT_KEYS, preferred_keys.get("battery_percent")
        )
        self.battery_capacity = CapabilityCache(
            "battery_capacity", BATTERY_CAPACITY_KEYS, preferred_keys.get("battery_capacity")
        )
        self.cpu_temperature = cpu_temperature_probe or CpuTemperatureProbe(
            CPU_TEMPERATURE_KEYS, cached_keys=cached_cpu_temperature_keys
        )

    @property
    def capabilities(self) -> list[CapabilityCache]:
        return [self.package_power, self.battery_voltage, self.battery_percent, self.battery_capacity]

    def resolved_keys(self) -> dict[str, str]:
        """Winning alias keys discovered so far."""
        return {c.name: c.preferred_key for c in self.capabilities if c.preferred_key is not None}

    @property
    def cpu_temperature_keys(self) -> list[str]:
        return list(self.cpu_temperature.discovered_keys)

    def reset_capabilities(self) -> None:
        """Forget remembered aliases so the next tick re-probes."""
        for capability in self.capabilities:
            capability.reset()

    def _ensure_open(self) -> bool:
        if self._opened:
            return True
        try:
            self._opened = bool(self.transport.open())
        except Exception as e:
            logger.debug(f"Register transport open failed: {e}")
            self._opened = False
        if not self._opened:
            logger.debug("Register transport unavailable this tick")
        return self._opened

    def _key_info(self, key: str) -> tuple[int, str] | None:
        cached = self._key_info_cache.get(key)
        if cached is not None:
            return cached
        try:
            info = self.transport.read_key_info(key)
        except Exception as e:
            logger.debug(f"Key info read failed for {key}: {e}")
            return None
        if info is None:
            return None
        size, type_tag = info
        if size <= 0:
            return None
        cached = (int(size), normalize_type_tag(type_tag))
        self._key_info_cache[key] = cached
        return cached

    def read(self, key: str) -> RegisterValue | None:
        """Read one register, or None on any failure."""
        if not self._ensure_open():
            return None
        info = self._key_info(key)
        if info is None:
            return None
        size, type_tag = info
        try:
            data = self.transport.read_key_bytes(key, size)
        except Exception as e:
            logger.debug(f"Register read failed for {key}: {e}")
            return None
        if data is None:
            return None
        return RegisterValue(key=key, data_size=size, data_type=type_tag, data=data)

    def read_float(self, key: str) -> float | None:
        value = self.read(key)
        return value.float_value() if value is not None else None

    def read_power_data(self, detail_level: DetailLevel, hints: ReadHints | None = None) -> PowerReadingSet:
        """Read the register set for the given profile.

        Args:
            detail_level: SUMMARY for the always-visible readout, FULL for the
                detailed view and consistency checks
            hints: Optional registers the summary profile should include

        Returns:
            PowerReadingSet; empty (all flags false) when the transport is down
        """
        if not self._ensure_open():
            return PowerReadingSet()
        if detail_level == DetailLevel.FULL:
            return self._read_full()
        return self._read_summary(hints or ReadHints())

    def _read_into(self, values: dict[str, Any], name: str, key: str) -> float | None:
        """Read ``key`` into ``values[name]`` and raise its ``has_*`` flag."""
        value = self.read_float(key)
        if value is not None:
            values[name] = value
            values[f"has_{name}"] = True
        return value

    def _read_rails(self, values: dict[str, Any]) -> None:
        self._read_into(values, "battery_rate", PowerKey.BATTERY_RATE)
        self._read_into(values, "delivery_rate", PowerKey.DELIVERY_RATE)
        self._read_into(values, "system_total", PowerKey.SYSTEM_TOTAL)

    def _read_package_power(self, values: dict[str, Any]) -> None:
        result = self.package_power.read(self.read_float, require_positive=True)
        if result is not None:
            values["package_power"], values["package_power_key"] = result
            values["has_package_power"] = True

    def _read_temperatures(self, values: dict[str, Any], allow_scan: bool) -> None:
        self._read_into(values, "battery_temperature", BatteryKey.TEMPERATURE)
        result = self.cpu_temperature.read(self.read_float, allow_scan=allow_scan)
        if result is not None:
            values["cpu_temperature"], values["cpu_temperature_key"] = result
            values["has_cpu_temperature"] = True

    def _read_summary(self, hints: ReadHints) -> PowerReadingSet:
        values: dict[str, Any] = {}
        self._read_rails(values)
        if hints.needs_screen_power:
            self._read_into(values, "screen_power", PowerKey.SCREEN)
        if hints.needs_package_power:
            self._read_package_power(values)
        if hints.needs_temperature:
            self._read_temperatures(values, allow_scan=False)
        return PowerReadingSet(**values)

    def _read_full(self) -> PowerReadingSet:
        values: dict[str, Any] = {}
        self._read_rails(values)
        self._read_package_power(values)
        self._read_into(values, "screen_power", PowerKey.SCREEN)

        # Adapter rails read zero when unplugged
        if (value := self.read_float(PowerKey.ADAPTER_VOLTAGE)) is not None:
            values["adapter_input_voltage"] = value
            values["has_adapter_input_voltage"] = value > 0
        if (value := self.read_float(PowerKey.ADAPTER_CURRENT)) is not None:
            values["adapter_input_current"] = value
            values["has_adapter_input_current"] = value > 0

        self._read_into(values, "full_charge_capacity", BatteryKey.FULL_CHARGE_CAPACITY)
        self._read_into(values, "design_capacity", BatteryKey.DESIGN_CAPACITY)

        for name, capability in (
            ("current_capacity", self.battery_capacity),
            ("battery_voltage", self.battery_voltage),
            ("battery_percent", self.battery_percent),
        ):
            if (result := capability.read(self.read_float)) is not None:
                values[name], values[f"{name}_key"] = result
                values[f"has_{name}"] = True

        self._read_into(values, "battery_current", BatteryKey.CURRENT)
        if (value := self.read_float(BatteryKey.CYCLE_COUNT)) is not None:
            rounded = int(round(value))
            if rounded > 0:
                values["battery_cycle_count"] = rounded
        self._read_into(values, "charging_status", BatteryKey.CHARGING_STATUS)
        self._read_into(values, "time_to_empty", BatteryKey.TIME_TO_EMPTY)
        self._read_into(values, "time_to_full", BatteryKey.TIME_TO_FULL)

        cells = []
        for key in BatteryKey.CELL_VOLTAGES:
            value = self.read_float(key)
            if value is None or value <= 0:
                continue
            cells.append(value)
        if cells:
            values["battery_cell_voltages"] = tuple(cells)
            values["has_battery_cell_voltages"] = True

        if (value := self.read_float(PlatformKey.LID_STATE)) is not None:
            values["lid_closed"] = value > 0.5

        platform = self.read(PlatformKey.PLATFORM_NAME)
        values["platform_name"] = platform.string_value() if platform is not None else None
        values["charging_control"] = self._read_charging_control()
        values["discharging_control"] = self._read_discharging_control()
        values["fan_readings"] = tuple(self._read_fans())
        self._read_temperatures(values, allow_scan=True)
        return PowerReadingSet(**values)

    def _read_charging_control(self) -> ControlState:
        for key in CHARGE_CONTROL_KEYS:
            value = self.read(key)
            if value is None:
                continue
            if key == "CHTE":
                state = _parse_tahoe_charge_state(value)
            else:
                state = _parse_legacy_charge_state(value)
            return ControlState(state=state, key=key, raw_hex=value.raw_hex())
        return ControlState()

    def _read_discharging_control(self) -> ControlState:
        for key in DISCHARGE_CONTROL_KEYS:
            value = self.read(key)
            if value is None:
                continue
            if not value.data:
                state = SwitchState.UNKNOWN
            else:
                state = SwitchState.DISABLED if value.data[0] == 0x00 else SwitchState.ENABLED
            return ControlState(state=state, key=key, raw_hex=value.raw_hex())
        return ControlState()

    def _read_fans(self) -> list[FanReading]:
        count_value = self.read_float(PlatformKey.FAN_COUNT) or 0.0
        count = min(max(0, int(round(count_value))), MAX_FANS)
        indices = range(count) if count > 0 else (0, 1)

        readings = []
        for index in indices:
            rpm = self.read_float(f"F{index}Ac")
            if rpm is None or rpm <= 0:
                continue
            max_rpm = self.read_float(f"F{index}Mx")
            min_rpm = self.read_float(f"F{index}Mn")
            target_rpm = self.read_float(f"F{index}Tg")
            mode = self.read_float(f"F{index}Md")
            readings.append(
                FanReading(
                    index=index,
                    rpm=rpm,
                    max_rpm=max_rpm,
                    min_rpm=min_rpm,
                    target_rpm=target_rpm,
                    mode_raw=int(round(mode)) if mode is not None else None,
                    percent_max=fan_percent_of_max(rpm, min_rpm, max_rpm),
                )
            )
        return readings


def fan_percent_of_max(rpm: float, min_rpm: float | None, max_rpm: float | None) -> float | None:
    if max_rpm is None or max_rpm <= 0:
        return None
    if min_rpm is not None and min_rpm > 0 and max_rpm > min_rpm:
        return min(100.0, max(0.0, (rpm - min_rpm) / (max_rpm - min_rpm) * 100))
    return min(100.0, rpm / max_rpm * 100)


def _parse_legacy_charge_state(value: RegisterValue) -> SwitchState:
    if not value.data:
        return SwitchState.UNKNOWN
    if value.data[0] == 0x00:
        return SwitchState.ENABLED
    if value.data[0] == 0x02:
        return SwitchState.DISABLED
    return SwitchState.UNKNOWN


def _parse_tahoe_charge_state(value: RegisterValue) -> SwitchState:
    size = max(value.data_size, 4)
    payload = value.data[:size]
    return SwitchState.ENABLED if all(b == 0 for b in payload) else SwitchState.DISABLED
