"""OS device-property bag reader.

The battery service exposes a flat key -> value bag (plus a few nested bags for
adapter identity, battery identity and, on newer OS versions, milli-unit power
telemetry). This module turns that bag into a typed :class:`BatteryInfo`.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

PropertyBag = Mapping[str, Any]
PropertySource = Callable[[], PropertyBag | None]


class CapacityUnits(str, Enum):
    PERCENT = "percent"
    MAH = "mah"


@dataclass(frozen=True)
class PowerTelemetry:
    """Milli-unit power telemetry block (mW, mA, mV)."""

    adapter_efficiency_loss: int = 0
    battery_power: int = 0
    system_current_in: int = 0
    system_energy_consumed: int = 0
    system_load: int = 0
    system_power_in: int = 0
    system_voltage_in: int = 0


@dataclass(frozen=True)
class AdapterInfo:
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    family_code: str | None = None
    adapter_id: str | None = None
    vendor_id: str | None = None
    product_id: str | None = None


@dataclass(frozen=True)
class BatteryDetails:
    name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    firmware_version: str | None = None
    hardware_revision: str | None = None
    cycle_count: int | None = None


@dataclass(frozen=True)
class BatteryInfo:
    current_capacity: int = 0
    max_capacity: int | None = None
    capacity_units: CapacityUnits = CapacityUnits.PERCENT
    battery_percent: int = 0
    has_capacity: bool = False
    is_charging: bool = False
    is_external_connected: bool = False
    time_remaining_minutes: int | None = None
    battery_voltage: int | None = None
    instant_amperage: int | None = None
    cell_voltages: tuple[int, ...] | None = None
    adapter_watts: float = 0.0
    adapter_voltage: float = 0.0
    adapter_amperage: float = 0.0
    adapter_info: AdapterInfo | None = None
    battery_details: BatteryDetails | None = None
    power_telemetry: PowerTelemetry | None = None


def infer_capacity_units(current: int, max_capacity: int | None) -> CapacityUnits:
    """Decide whether capacity values are percentages or milliamp-hours."""
    if current <= 100 and (max_capacity is None or max_capacity <= 100):
        return CapacityUnits.PERCENT
    if max_capacity is not None and max_capacity > 200:
        return CapacityUnits.MAH
    if current > 100:
        return CapacityUnits.MAH
    return CapacityUnits.PERCENT


def percent_from_capacity(current: int, max_capacity: int | None, units: CapacityUnits) -> int:
    """Integer charge percent in [0, 100]; 0 when a mAh ratio has no usable max."""
    if units == CapacityUnits.PERCENT:
        return min(100, max(0, int(current)))
    if max_capacity is None or max_capacity <= 0:
        return 0
    percent = current / max_capacity * 100.0
    return min(100, max(0, int(round(percent))))


def _int_value(bag: Mapping | None, key: str) -> int | None:
    if not bag:
        return None
    value = bag.get(key)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(round(value))
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _bool_value(bag: Mapping | None, key: str) -> bool | None:
    if not bag or key not in bag:
        return None
    value = bag[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("yes", "true", "1"):
            return True
        if normalized in ("no", "false", "0"):
            return False
    return None


def _int_list(bag: Mapping | None, key: str) -> tuple[int, ...] | None:
    if not bag:
        return None
    values = bag.get(key)
    if not isinstance(values, list | tuple):
        return None
    ints = []
    for item in values:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            ints.append(item)
        elif isinstance(item, float):
            ints.append(int(round(item)))
        elif isinstance(item, str):
            try:
                ints.append(int(item))
            except ValueError:
                continue
    return tuple(ints) if ints else None


def _string_value(bag: Mapping | None, keys: list[str], fallback: Mapping | None = None) -> str | None:
    for source in (bag, fallback):
        if not source:
            continue
        for key in keys:
            value = source.get(key)
            if value is None or isinstance(value, bool):
                continue
            if isinstance(value, str):
                if value:
                    return value
                continue
            if isinstance(value, int | float):
                return str(value)
    return None


def _int_with_fallback(bag: Mapping | None, key: str, fallback: Mapping | None) -> int | None:
    value = _int_value(bag, key)
    if value is not None:
        return value
    return _int_value(fallback, key)


def _read_adapter_info(details: Mapping | None) -> AdapterInfo | None:
    if not details:
        return None
    info = AdapterInfo(
        name=_string_value(details, ["Name", "AdapterName", "Description"]),
        manufacturer=_string_value(details, ["Manufacturer", "VendorName"]),
        model=_string_value(details, ["Model", "ModelID", "ProductName"]),
        serial_number=_string_value(details, ["SerialNumber", "Serial"]),
        family_code=_string_value(details, ["FamilyCode"]),
        adapter_id=_string_value(details, ["AdapterID", "AdapterId"]),
        vendor_id=_string_value(details, ["VendorID", "VendorId"]),
        product_id=_string_value(details, ["ProductID", "ProductId"]),
    )
    return None if info == AdapterInfo() else info


def _read_battery_details(bag: Mapping) -> BatteryDetails | None:
    nested = bag.get("BatteryData")
    nested = nested if isinstance(nested, Mapping) else None
    details = BatteryDetails(
        name=_string_value(bag, ["DeviceName", "ProductName", "BatteryType"], nested),
        manufacturer=_string_value(bag, ["Manufacturer", "ManufacturerName"], nested),
        model=_string_value(bag, ["ModelNumber", "Model", "BatteryModel"], nested),
        serial_number=_string_value(bag, ["Serial", "SerialNumber", "BatterySerialNumber"], nested),
        firmware_version=_string_value(bag, ["FirmwareVersion", "FirmwareRevision"], nested),
        hardware_revision=_string_value(bag, ["HardwareRevision", "HardwareVersion"], nested),
        cycle_count=_int_with_fallback(bag, "CycleCount", nested),
    )
    return None if details == BatteryDetails() else details


def _read_power_telemetry(bag: Mapping) -> PowerTelemetry | None:
    telemetry = bag.get("PowerTelemetryData")
    if not isinstance(telemetry, Mapping):
        return None
    return PowerTelemetry(
        adapter_efficiency_loss=_int_value(telemetry, "AdapterEfficiencyLoss") or 0,
        battery_power=_int_value(telemetry, "BatteryPower") or 0,
        system_current_in=_int_value(telemetry, "SystemCurrentIn") or 0,
        system_energy_consumed=_int_value(telemetry, "SystemEnergyConsumed") or 0,
        system_load=_int_value(telemetry, "SystemLoad") or 0,
        system_power_in=_int_value(telemetry, "SystemPowerIn") or 0,
        system_voltage_in=_int_value(telemetry, "SystemVoltageIn") or 0,
    )


def parse_battery_info(bag: PropertyBag | None) -> BatteryInfo:
    """Build a :class:`BatteryInfo` from a property bag (empty info if None)."""
    if not bag:
        return BatteryInfo()

    raw_current_capacity = _int_value(bag, "CurrentCapacity")
    current_capacity = raw_current_capacity or 0
    max_capacity = _int_value(bag, "MaxCapacity")
    if max_capacity is None:
        max_capacity = _int_value(bag, "AppleRawMaxCapacity")
    if max_capacity is None:
        max_capacity = _int_value(bag, "DesignCapacity")

    instant_amperage = _int_value(bag, "InstantAmperage")
    if instant_amperage is None:
        instant_amperage = _int_value(bag, "Amperage")

    adapter_details = bag.get("AdapterDetails")
    adapter_details = adapter_details if isinstance(adapter_details, Mapping) else None
    adapter_watts = _int_value(adapter_details, "Watts")
    adapter_voltage = _int_value(adapter_details, "AdapterVoltage")
    adapter_current = _int_value(adapter_details, "Current")

    units = infer_capacity_units(current_capacity, max_capacity)

    return BatteryInfo(
        current_capacity=current_capacity,
        max_capacity=max_capacity,
        capacity_units=units,
        battery_percent=percent_from_capacity(current_capacity, max_capacity, units),
        has_capacity=raw_current_capacity is not None,
        is_charging=_bool_value(bag, "IsCharging") or False,
        is_external_connected=_bool_value(bag, "ExternalConnected") or False,
        time_remaining_minutes=_int_value(bag, "TimeRemaining"),
        battery_voltage=_int_value(bag, "Voltage"),
        instant_amperage=instant_amperage,
        cell_voltages=_int_list(bag, "CellVoltage") or _int_list(bag, "CellVoltages"),
        adapter_watts=float(adapter_watts) if adapter_watts is not None else 0.0,
        adapter_voltage=adapter_voltage / 1000.0 if adapter_voltage is not None else 0.0,
        adapter_amperage=adapter_current / 1000.0 if adapter_current is not None else 0.0,
        adapter_info=_read_adapter_info(adapter_details),
        battery_details=_read_battery_details(bag),
        power_telemetry=_read_power_telemetry(bag),
    )


class StaticPropertySource:
    """Serves a fixed property bag, e.g. one captured to YAML on another machine."""

    def __init__(self, bag: PropertyBag | None = None):
        self.bag = dict(bag) if bag else None

    @classmethod
    def from_yaml(cls, path: str | Path) -> "StaticPropertySource":
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Property bag in {path} must be a mapping")
        return cls(raw)

    def __call__(self) -> PropertyBag | None:
        return self.bag


class BatteryInfoReader:
    """Reads the property bag once per tick and parses it."""

    def __init__(self, source: PropertySource):
        self.source = source

    def read_battery_info(self) -> BatteryInfo:
        try:
            bag = self.source()
        except Exception as e:
            logger.debug(f"Battery property source failed: {e}")
            return BatteryInfo()
        return parse_battery_info(bag)
