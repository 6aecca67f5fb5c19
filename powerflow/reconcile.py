"""Reconciliation engine.

Fuses one tick of register readings, the OS property bag and the auxiliary
sensors into a single :class:`PowerSnapshot`. Per-model conventions (rate
polarity, alias keys, CPU temperature keys) are learned here and written back
to the calibration store.
"""

import logging
import math
import time
from collections.abc import Callable
from typing import Any

from .balance import FlowDirection, Tolerances, direction_conflicts, resolve_flow_direction
from .calibration import CachedTemperature, CalibrationState, CalibrationStore
from .constants import (
    CURRENT_SCALE_CANDIDATES,
    CURRENT_SCALE_TOLERANCE,
    MAX_CHARGE_MINUTES,
    MAX_DISCHARGE_MINUTES,
    MAX_HEALTH_PERCENT,
    DetailLevel,
)
from .models import PowerDiagnostics, PowerSettings, PowerSnapshot, StatusBarItem
from .registers.reader import PowerReadingSet, ReadHints, RegisterSourceReader
from .sources.battery_info import BatteryInfo, BatteryInfoReader, CapacityUnits
from .sources.sensors import GenericTemperatureReader, ThermalPressureReader, TimeRemainingReader

logger = logging.getLogger(__name__)

SUMMARY_TEMPERATURE_REFRESH = 30.0  # seconds
FULL_TEMPERATURE_REFRESH = 5.0
MAX_CACHED_TEMPERATURE_AGE = 120.0
TEMPERATURE_PERSIST_INTERVAL = 60.0


def normalize_volts(value: float) -> float:
    """Volts from a reading that may be in volts or millivolts."""
    if value <= 0:
        return 0.0
    return value / 1000.0 if value > 100 else value


def normalize_millivolts(value: float) -> float:
    """Millivolts from a reading that may be in volts or millivolts."""
    if value <= 0:
        return 0.0
    return value if value > 100 else value * 1000.0


def infer_current_scale(register_current: float, os_current: float) -> float | None:
    """Decade factor that maps the register current onto the OS current.

    Returns None when either value is too small to compare or when the ratio
    is not within the tolerance band of the nearest candidate.
    """
    abs_register = abs(register_current)
    abs_os = abs(os_current)
    if abs_register <= 0.01 or abs_os <= 0.01:
        return None
    ratio = abs_os / abs_register
    best = min(CURRENT_SCALE_CANDIDATES, key=lambda candidate: abs(ratio - candidate))
    if best / CURRENT_SCALE_TOLERANCE <= ratio <= best * CURRENT_SCALE_TOLERANCE:
        return best
    return None


def battery_health_percent(readings: PowerReadingSet) -> float | None:
    if not (readings.has_design_capacity and readings.has_full_charge_capacity):
        return None
    if readings.design_capacity <= 0 or readings.full_charge_capacity <= 0:
        return None
    raw = readings.full_charge_capacity / readings.design_capacity * 100.0
    return max(0.0, min(raw, MAX_HEALTH_PERCENT))


def battery_remaining_wh(readings: PowerReadingSet, info: BatteryInfo) -> float | None:
    """Remaining energy, preferring the register capacity/voltage pair."""
    if (
        readings.has_current_capacity
        and readings.has_battery_voltage
        and readings.current_capacity > 0
        and readings.battery_voltage > 0
    ):
        return readings.current_capacity / 1000.0 * normalize_volts(readings.battery_voltage)

    if info.capacity_units != CapacityUnits.MAH or info.battery_voltage is None:
        return None
    if info.current_capacity <= 0 or info.battery_voltage <= 0:
        return None
    return info.current_capacity / 1000.0 * normalize_volts(float(info.battery_voltage))


def sanitize_time_remaining(minutes: int | None, info: BatteryInfo) -> int | None:
    if minutes is None or minutes <= 0:
        return None
    if info.is_charging:
        return minutes if minutes <= MAX_CHARGE_MINUTES else None
    if info.is_external_connected:
        return None
    return minutes if minutes <= MAX_DISCHARGE_MINUTES else None


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def register_battery_percent(readings: PowerReadingSet) -> int | None:
    if not readings.has_battery_percent:
        return None
    return int(round(_clamp_percent(readings.battery_percent)))


def resolve_battery_level(info: BatteryInfo, register_percent: int | None) -> int:
    if info.capacity_units == CapacityUnits.PERCENT:
        return info.battery_percent
    if info.max_capacity is not None and info.max_capacity > 0 and info.battery_percent > 0:
        return info.battery_percent
    if register_percent is not None:
        return register_percent
    return info.battery_percent


def battery_level_known(info: BatteryInfo, readings: PowerReadingSet) -> bool:
    """Whether any source reported a charge level (a 0% level is otherwise ambiguous)."""
    if info.has_capacity or readings.has_battery_percent:
        return True
    return readings.has_current_capacity and (readings.has_full_charge_capacity or readings.has_design_capacity)


def resolve_battery_level_precise(info: BatteryInfo, readings: PowerReadingSet) -> float:
    if readings.has_battery_percent and readings.battery_percent > 0:
        return _clamp_percent(readings.battery_percent)

    if readings.has_current_capacity and readings.current_capacity > 0:
        if readings.has_full_charge_capacity:
            max_capacity = readings.full_charge_capacity
        elif readings.has_design_capacity:
            max_capacity = readings.design_capacity
        else:
            max_capacity = 0.0
        if max_capacity > 0:
            return _clamp_percent(readings.current_capacity / max_capacity * 100.0)

    if (
        info.capacity_units == CapacityUnits.MAH
        and info.max_capacity is not None
        and info.max_capacity > 0
        and info.current_capacity > 0
    ):
        return _clamp_percent(info.current_capacity / info.max_capacity * 100.0)

    return float(resolve_battery_level(info, register_battery_percent(readings)))


def resolve_cell_voltages(readings: PowerReadingSet, info: BatteryInfo) -> tuple[float, ...]:
    if readings.battery_cell_voltages:
        values = list(readings.battery_cell_voltages)
    elif info.cell_voltages:
        values = [float(v) for v in info.cell_voltages]
    else:
        values = []
    return tuple(v for v in (normalize_volts(v) for v in values) if v > 0)


def resolve_battery_voltage_mv(readings: PowerReadingSet, info: BatteryInfo) -> float | None:
    if readings.has_battery_voltage and readings.battery_voltage > 0:
        return normalize_millivolts(readings.battery_voltage)
    if info.battery_voltage is not None and info.battery_voltage > 0:
        return normalize_millivolts(float(info.battery_voltage))
    return None


def flow_direction(snapshot: PowerSnapshot, tolerances: Tolerances | None = None) -> FlowDirection:
    """Battery flow direction for a published snapshot, as a flow diagram draws it."""
    tolerances = tolerances or Tolerances()
    return resolve_flow_direction(
        snapshot.battery_power,
        snapshot.system_in,
        snapshot.system_load,
        charging_hint=snapshot.is_charging_active,
        floor=tolerances.absolute_floor,
        relative=tolerances.relative,
    )


class ReconciliationEngine:
    """Produces one best-estimate snapshot per tick.

    The engine owns the model's :class:`CalibrationState`. Everything it learns
    (polarity, alias keys, CPU temperature keys, the last CPU temperature) is
    written back through the store; store failures never affect the tick.
    """

    def __init__(
        self,
        reader: RegisterSourceReader,
        battery_reader: BatteryInfoReader,
        store: CalibrationStore,
        calibration: CalibrationState | None = None,
        model_id: str | None = None,
        thermal_reader: ThermalPressureReader | None = None,
        temperature_reader: GenericTemperatureReader | None = None,
        time_reader: TimeRemainingReader | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.battery_reader = battery_reader
        self.store = store
        self.calibration = calibration or CalibrationState.load(store, model_id)
        self.thermal_reader = thermal_reader or ThermalPressureReader()
        self.temperature_reader = temperature_reader
        self.time_reader = time_reader
        self.tolerances = Tolerances.from_config(config)
        self.clock = clock

        self.polarity_key = self.calibration.model_id
        self.battery_current_scale: float | None = None
        self._last_saved_temperature = self.calibration.cached_temperature
        self._last_saved_preferred_keys = dict(self.calibration.preferred_keys)
        self._last_saved_cpu_keys = list(self.calibration.cpu_temperature_keys)

    @property
    def polarity(self) -> int:
        return self.calibration.polarity or 1

    @property
    def model_id(self) -> str:
        return self.calibration.model_id

    def read_hints(self, settings: PowerSettings, detail_level: DetailLevel, now: float | None = None) -> ReadHints:
        """Optional registers the current display configuration needs."""
        fmt = settings.resolved_format()
        cached_age = self._cached_temperature_age(now if now is not None else self.clock())
        needs_refresh = cached_age is None or cached_age > SUMMARY_TEMPERATURE_REFRESH
        return ReadHints(
            needs_screen_power=settings.status_bar_item == StatusBarItem.SCREEN or "{screen}" in fmt,
            needs_package_power=settings.status_bar_item == StatusBarItem.HEATPIPE or "{heatpipe}" in fmt,
            needs_temperature=detail_level == DetailLevel.FULL or "{temp}" in fmt or needs_refresh,
        )

    def read_snapshot(self, detail_level: DetailLevel, settings: PowerSettings | None = None) -> PowerSnapshot:
        """Read every source once and reconcile them into a snapshot.

        Never raises: an unexpected failure yields an empty snapshot.
        """
        settings = settings or PowerSettings()
        try:
            return self._read_snapshot(detail_level, settings)
        except Exception as e:
            logger.warning(f"Reconciliation failed, publishing empty snapshot: {e}")
            return PowerSnapshot.empty(self.clock())

    def _read_snapshot(self, detail_level: DetailLevel, settings: PowerSettings) -> PowerSnapshot:
        now = self.clock()
        hints = self.read_hints(settings, detail_level, now)
        info = self.battery_reader.read_battery_info()
        readings = self.reader.read_power_data(detail_level, hints)
        self._persist_discovered_keys()
        self._update_polarity_key(readings)

        telemetry = info.power_telemetry
        efficiency_loss = telemetry.adapter_efficiency_loss / 1000.0 if telemetry else 0.0
        telemetry_system_in = telemetry.system_power_in / 1000.0 if telemetry else None
        telemetry_system_load = telemetry.system_load / 1000.0 if telemetry else None
        telemetry_battery_power = telemetry.battery_power / 1000.0 if telemetry else None

        adapter_input_voltage = readings.adapter_input_voltage if readings.has_adapter_input_voltage else None
        adapter_input_current = readings.adapter_input_current if readings.has_adapter_input_current else None
        adapter_input_power = None
        if adapter_input_voltage and adapter_input_current:
            adapter_input_power = adapter_input_voltage * adapter_input_current

        has_register_system = readings.has_delivery_rate and readings.has_system_total
        use_telemetry_system = detail_level == DetailLevel.SUMMARY and not has_register_system and telemetry is not None
        if use_telemetry_system:
            system_in = telemetry_system_in or 0.0
            system_load = telemetry_system_load or 0.0
        else:
            if readings.has_delivery_rate:
                system_in = readings.delivery_rate
            elif telemetry_system_in is not None:
                system_in = telemetry_system_in
            else:
                system_in = adapter_input_power or 0.0
            if readings.has_system_total:
                system_load = readings.system_total
            else:
                system_load = telemetry_system_load or 0.0

        screen_power_available = readings.has_screen_power and readings.lid_closed is not True
        register_percent = register_battery_percent(readings)
        battery_current_ma = self._resolve_battery_current(readings, info)
        battery_voltage_mv = resolve_battery_voltage_mv(readings, info)

        battery_power, source = self._resolve_battery_power(
            rate=self._adjusted_battery_rate(readings, info),
            telemetry_power=telemetry_battery_power,
            current_ma=battery_current_ma,
            voltage_mv=battery_voltage_mv,
            system_in=system_in,
            system_load=system_load,
            prefer_telemetry=use_telemetry_system,
        )
        battery_power = self._cross_check_direction(battery_power, source, system_in, system_load)

        temperature_c, temperature_source = self._primary_temperature(readings, detail_level, now)

        return PowerSnapshot(
            timestamp=now,
            is_charging=info.is_charging,
            is_external_power_connected=info.is_external_connected,
            battery_level=resolve_battery_level(info, register_percent),
            battery_level_precise=resolve_battery_level_precise(info, readings),
            battery_level_available=battery_level_known(info, readings),
            time_remaining_minutes=sanitize_time_remaining(self._raw_time_remaining(readings, info), info),
            system_in=system_in,
            system_load=system_load,
            battery_power=battery_power,
            battery_power_source=source,
            battery_charging=battery_power > self.tolerances.battery_power_noise,
            adapter_power=adapter_input_power if adapter_input_power is not None else system_in + efficiency_loss,
            adapter_input_voltage=adapter_input_voltage,
            adapter_input_current=adapter_input_current,
            adapter_input_power=adapter_input_power,
            efficiency_loss=efficiency_loss,
            screen_power=readings.screen_power if screen_power_available else 0.0,
            screen_power_available=screen_power_available,
            package_power=readings.package_power if readings.has_package_power else 0.0,
            package_power_key=readings.package_power_key if readings.has_package_power else None,
            adapter_watts=info.adapter_watts,
            adapter_voltage=info.adapter_voltage,
            adapter_amperage=info.adapter_amperage,
            adapter_info=info.adapter_info,
            battery_details=info.battery_details,
            temperature_c=temperature_c,
            temperature_source=temperature_source,
            battery_temperature_c=(
                readings.battery_temperature
                if readings.has_battery_temperature and readings.battery_temperature > 0
                else None
            ),
            battery_health_percent=battery_health_percent(readings),
            battery_remaining_wh=battery_remaining_wh(readings, info),
            battery_current_ma=battery_current_ma,
            battery_voltage_mv=battery_voltage_mv,
            battery_cell_voltages=resolve_cell_voltages(readings, info),
            battery_cycle_count=readings.battery_cycle_count,
            battery_percent_register=register_percent,
            lid_closed=readings.lid_closed,
            platform_name=readings.platform_name,
            thermal_pressure=self.thermal_reader.read_pressure(),
            diagnostics=PowerDiagnostics(readings=readings, telemetry=telemetry),
        )

    # Polarity

    def _update_polarity_key(self, readings: PowerReadingSet) -> None:
        platform = (readings.platform_name or "").strip()
        if not platform or platform == self.polarity_key:
            return
        logger.info(f"Polarity key migrated from {self.polarity_key} to platform {platform}")
        self.polarity_key = platform
        stored = self.store.load_polarity(platform)
        if stored is not None:
            self.calibration.polarity = stored

    def _adjusted_battery_rate(self, readings: PowerReadingSet, info: BatteryInfo) -> float | None:
        if not readings.has_battery_rate:
            return None
        rate = readings.battery_rate
        if self.calibration.polarity is None and abs(rate) > self.tolerances.rate_noise:
            learned = None
            if not info.is_external_connected and not info.is_charging:
                learned = 1 if rate < 0 else -1
            elif info.is_charging and info.is_external_connected:
                learned = 1 if rate > 0 else -1
            if learned is not None:
                self.calibration.polarity = learned
                label = "normal" if learned == 1 else "inverted"
                logger.info(f"🔋 Learned {label} battery-rate polarity for {self.polarity_key}")
                self.store.save_polarity(self.polarity_key, learned)
        return rate * self.polarity

    # Battery power

    def _resolve_battery_power(
        self,
        rate: float | None,
        telemetry_power: float | None,
        current_ma: float | None,
        voltage_mv: float | None,
        system_in: float,
        system_load: float,
        prefer_telemetry: bool,
    ) -> tuple[float, str]:
        """Pick the battery power estimate by source precedence.

        Returns:
            (signed watts, name of the winning source)
        """
        noise = self.tolerances.battery_power_noise
        if prefer_telemetry and telemetry_power is not None and abs(telemetry_power) > noise:
            return telemetry_power, "telemetry"
        if rate is not None and abs(rate) > noise:
            return rate, "rate"
        if telemetry_power is not None and abs(telemetry_power) > noise:
            return telemetry_power, "telemetry"
        if voltage_mv and current_ma:
            return voltage_mv * current_ma / 1_000_000.0, "voltage_current"
        if system_in > 0 and system_load > 0:
            return system_in - system_load, "balance"
        if system_in <= 0 and system_load > 0:
            return -system_load, "load"
        return 0.0, "none"

    def _cross_check_direction(self, battery_power: float, source: str, system_in: float, system_load: float) -> float:
        """Trust the implied balance for the sign when it clearly disagrees."""
        if source in ("balance", "load", "none"):
            return battery_power
        if system_in <= 0 or system_load <= 0:
            return battery_power
        implied = system_in - system_load
        if not direction_conflicts(battery_power, implied, self.tolerances.absolute_floor, self.tolerances.relative):
            return battery_power
        logger.debug(f"Battery {source} sign disagrees with balance {implied:.2f} W, using balance direction")
        return math.copysign(abs(battery_power), implied)

    def _resolve_battery_current(self, readings: PowerReadingSet, info: BatteryInfo) -> float | None:
        if info.instant_amperage is not None:
            os_current = float(info.instant_amperage)
            if readings.has_battery_current:
                inferred = infer_current_scale(readings.battery_current, os_current)
                if inferred is not None and inferred != self.battery_current_scale:
                    logger.debug(f"Battery current scale inferred as {inferred}")
                    self.battery_current_scale = inferred
            return os_current
        if not readings.has_battery_current or self.battery_current_scale is None:
            return None
        return readings.battery_current * self.battery_current_scale

    # Time remaining

    def _raw_time_remaining(self, readings: PowerReadingSet, info: BatteryInfo) -> int | None:
        if info.is_charging:
            register_time = readings.time_to_full if readings.has_time_to_full else 0.0
        else:
            register_time = readings.time_to_empty if readings.has_time_to_empty else 0.0
        if register_time > 0:
            return int(round(register_time))
        if info.time_remaining_minutes is not None:
            return info.time_remaining_minutes
        if self.time_reader is not None:
            return self.time_reader.time_remaining_minutes()
        return None

    # Temperature

    def _cached_temperature_age(self, now: float) -> float | None:
        cached = self.calibration.cached_temperature
        return now - cached.timestamp if cached is not None else None

    def _primary_temperature(
        self, readings: PowerReadingSet, detail_level: DetailLevel, now: float
    ) -> tuple[float | None, str | None]:
        if readings.has_cpu_temperature and readings.cpu_temperature > 0:
            key = readings.cpu_temperature_key
            source = f"SMC {key}" if key else "SMC CPU"
            self._cache_temperature(readings.cpu_temperature, source, now)
            return readings.cpu_temperature, source

        cached_age = self._cached_temperature_age(now)
        refresh = FULL_TEMPERATURE_REFRESH if detail_level == DetailLevel.FULL else SUMMARY_TEMPERATURE_REFRESH
        if self.temperature_reader is not None and (cached_age is None or cached_age > refresh):
            generic = self.temperature_reader.read_cpu_temperature()
            if generic is not None:
                self._cache_temperature(generic, "HID CPU", now)
                return generic, "HID CPU"

        cached = self.calibration.cached_temperature
        if cached is not None and cached_age is not None and cached_age <= MAX_CACHED_TEMPERATURE_AGE:
            return cached.value, cached.source

        if readings.has_battery_temperature and readings.battery_temperature > 0:
            return readings.battery_temperature, "SMC Battery"

        return None, None

    def _cache_temperature(self, value: float, source: str | None, now: float) -> None:
        cached = CachedTemperature(value=value, source=source, timestamp=now)
        self.calibration.cached_temperature = cached
        last = self._last_saved_temperature
        if last is not None and now - last.timestamp < TEMPERATURE_PERSIST_INTERVAL:
            return
        self.store.save_cached_temperature(self.model_id, cached)
        self._last_saved_temperature = cached

    # Key discovery

    def _persist_discovered_keys(self) -> None:
        resolved = self.reader.resolved_keys()
        if resolved and resolved != self._last_saved_preferred_keys:
            self.calibration.preferred_keys = dict(resolved)
            self.store.save_preferred_keys(self.model_id, resolved)
            self._last_saved_preferred_keys = dict(resolved)

        cpu_keys = self.reader.cpu_temperature_keys
        if cpu_keys and cpu_keys != self._last_saved_cpu_keys:
            logger.info(f"Persisting {len(cpu_keys)} CPU temperature key(s) for {self.model_id}")
            self.calibration.cpu_temperature_keys = list(cpu_keys)
            self.store.save_discovered_keys(self.model_id, cpu_keys)
            self._last_saved_cpu_keys = list(cpu_keys)
