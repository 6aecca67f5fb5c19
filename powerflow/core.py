"""Wires sources, engine, scheduler, gatekeeper and consumers together."""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .calibration import CalibrationState, CalibrationStore, normalize_model_identifier
from .constants import DetailLevel
from .gatekeeper import ConsistencyGate
from .history import DEFAULT_CAPACITY, PowerHistory
from .metrics_logger import MetricsLogger
from .models import PowerSettings, PowerSnapshot
from .monitor import PowerMonitor
from .reconcile import ReconciliationEngine
from .registers import RegisterSourceReader, RegisterTransport, StaticRegisterTransport
from .sources import (
    BatteryInfoReader,
    CoolingDeviceLevelSource,
    GenericTemperatureReader,
    StaticPropertySource,
    SysfsPropertySource,
    ThermalPressureReader,
    TimeRemainingReader,
)
from .sources.battery_info import PropertySource

logger = logging.getLogger(__name__)

DMI_PRODUCT_PATHS = (
    Path("/sys/class/dmi/id/product_name"),
    Path("/sys/class/dmi/id/product_version"),
)

Subscriber = Callable[[PowerSnapshot], None]


def detect_model_identifier() -> str | None:
    """Hardware model from DMI, or None when unreadable."""
    parts = []
    for path in DMI_PRODUCT_PATHS:
        try:
            value = path.read_text().strip()
        except OSError:
            continue
        if value and value.lower() not in ("none", "to be filled by o.e.m."):
            parts.append(value)
    return normalize_model_identifier(" ".join(parts)) if parts else None


def create_register_transport(config: dict[str, Any]) -> RegisterTransport:
    """Factory for the configured register transport."""
    registers = config.get("sources", {}).get("registers", {})
    kind = registers.get("kind", "static")
    if kind == "static":
        path = registers.get("path")
        if path:
            return StaticRegisterTransport.from_yaml(path)
        logger.info("No register dump configured, register source unavailable")
        return StaticRegisterTransport(available=False)
    if kind == "none":
        return StaticRegisterTransport(available=False)
    raise ValueError(f"Unknown register transport: {kind}")


def create_property_source(config: dict[str, Any]) -> PropertySource:
    """Factory for the configured device-property source."""
    properties = config.get("sources", {}).get("properties", {})
    kind = properties.get("kind", "sysfs")
    if kind == "sysfs":
        return SysfsPropertySource(properties.get("root", "/sys/class/power_supply"))
    if kind == "static":
        path = properties.get("path")
        return StaticPropertySource.from_yaml(path) if path else StaticPropertySource()
    if kind == "none":
        return StaticPropertySource()
    raise ValueError(f"Unknown property source: {kind}")


def create_thermal_pressure_reader(config: dict[str, Any]) -> ThermalPressureReader:
    """Thermal-pressure reader over the configured cooling device, if any."""
    path = config.get("sources", {}).get("thermal_pressure")
    return ThermalPressureReader(CoolingDeviceLevelSource(path) if path else None)


def status_changed(previous: PowerSnapshot | None, current: PowerSnapshot) -> bool:
    """Whether the compact status readout needs the new snapshot."""
    if previous is None:
        return True
    return (
        previous.battery_level_available != current.battery_level_available
        or previous.battery_level != current.battery_level
        or abs(previous.battery_level_precise - current.battery_level_precise) >= 0.2
        or previous.is_charging_active != current.is_charging_active
        or previous.is_external_power_connected != current.is_external_power_connected
    )


class PowerflowManager:
    """Owns the sampling pipeline and publishes accepted snapshots."""

    def __init__(
        self,
        config: dict[str, Any],
        transport: RegisterTransport | None = None,
        property_source: PropertySource | None = None,
        store: CalibrationStore | None = None,
        model_id: str | None = None,
    ):
        self.config = config
        calibration_config = config.get("calibration", {})
        sources = config.get("sources", {})

        self.settings = PowerSettings.from_config(config)
        self.visible = bool(config.get("display", {}).get("visible", False))
        self.model_id = normalize_model_identifier(
            model_id or calibration_config.get("model_id") or detect_model_identifier()
        )
        self.store = store or CalibrationStore(calibration_config.get("store"))
        self.transport = transport or create_register_transport(config)
        property_source = property_source or create_property_source(config)

        calibration = CalibrationState.load(self.store, self.model_id)
        self.reader = RegisterSourceReader(
            self.transport,
            preferred_keys=calibration.preferred_keys,
            cached_cpu_temperature_keys=calibration.cpu_temperature_keys,
        )
        self.engine = ReconciliationEngine(
            self.reader,
            BatteryInfoReader(property_source),
            self.store,
            calibration=calibration,
            thermal_reader=create_thermal_pressure_reader(config),
            temperature_reader=GenericTemperatureReader() if sources.get("generic_temperature", True) else None,
            time_reader=TimeRemainingReader() if sources.get("time_remaining", True) else None,
            config=config,
        )
        self.monitor = PowerMonitor(self.engine, config)
        self.gate = ConsistencyGate(
            config,
            update_interval=self.settings.update_interval_seconds,
            on_retry=self._request_consistency_retry,
        )
        self.gate.visible = self.visible
        self.history = PowerHistory(int(config.get("history", {}).get("capacity", DEFAULT_CAPACITY)))
        self.metrics_logger = MetricsLogger(config)

        self.latest_snapshot: PowerSnapshot | None = None
        self.status_snapshot: PowerSnapshot | None = None
        self._subscribers: list[Subscriber] = []
        self._loop: asyncio.AbstractEventLoop | None = None

        self.monitor.on_update = self._on_monitor_update
        self.monitor.on_warmup_completed = self._on_warmup_completed

    async def start(self) -> None:
        logger.info(f"Starting Powerflow for model {self.model_id or 'unknown'}")
        self._loop = asyncio.get_running_loop()
        warmup = self.store.should_warmup(self.model_id)
        if warmup:
            self.store.mark_warmup_attempted(self.model_id)
        await self.monitor.start(self.settings, visible=self.visible, warmup=warmup)

    async def stop(self) -> None:
        logger.info("Stopping Powerflow")
        await self.monitor.stop()
        try:
            self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing register transport: {e}")
        self.metrics_logger.close()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a consumer of accepted snapshots.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set_visible(self, visible: bool) -> None:
        """Detailed view shown or hidden."""
        self.visible = visible
        self.gate.visible = visible
        self.monitor.apply_settings(self.settings, visible)
        if visible:
            self.monitor.trigger_immediate_update()

    def apply_settings(self, settings: PowerSettings) -> None:
        self.settings = settings.clamped()
        self.gate.update_interval = self.settings.update_interval_seconds
        self.monitor.apply_settings(self.settings, self.visible)

    def notify_power_source_changed(self) -> None:
        """Event hook for OS power-source notifications (adapter plugged/unplugged)."""
        logger.debug("Power source changed, requesting immediate sample")
        self.monitor.trigger_immediate_update()

    def apply_snapshot(self, snapshot: PowerSnapshot) -> PowerSnapshot | None:
        """Run a snapshot through the gate and publish it if accepted."""
        accepted = self.gate.submit(snapshot)
        if accepted is None:
            return None

        self.latest_snapshot = accepted
        if status_changed(self.status_snapshot, accepted):
            self.status_snapshot = accepted
        self.history.append(accepted, self.settings.update_interval_seconds, self.visible)
        self.metrics_logger.log_snapshot(accepted)

        for callback in list(self._subscribers):
            try:
                callback(accepted)
            except Exception as e:
                logger.error(f"Snapshot subscriber failed: {e}")
        return accepted

    def _on_monitor_update(self, snapshot: PowerSnapshot) -> None:
        if self._loop is None:
            self.apply_snapshot(snapshot)
            return
        self._loop.call_soon_threadsafe(self.apply_snapshot, snapshot)

    def _on_warmup_completed(self) -> None:
        self.store.mark_warmup_done(self.model_id)

    def _request_consistency_retry(self) -> None:
        self.monitor.trigger_immediate_update(DetailLevel.FULL, count_warmup=False)
