"""Test fixtures and configuration for powerflow tests."""

import copy
from typing import Any

import pytest

from powerflow.calibration import CalibrationState, CalibrationStore
from powerflow.config import DEFAULT_CONFIG
from powerflow.models import PowerSnapshot
from powerflow.reconcile import ReconciliationEngine
from powerflow.registers import RegisterSourceReader, StaticRegisterTransport
from powerflow.sources import BatteryInfoReader, StaticPropertySource

MODEL_ID = "TestBook1,1"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Default configuration with host-dependent sources switched off."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["sources"]["registers"] = {"kind": "none", "path": None}
    config["sources"]["properties"] = {"kind": "none", "root": None, "path": None}
    config["sources"]["generic_temperature"] = False
    config["sources"]["time_remaining"] = False
    config["calibration"]["store"] = None
    return config


@pytest.fixture
def charging_bag() -> dict[str, Any]:
    """Property bag of a laptop charging from the wall."""
    return {
        "IsCharging": True,
        "ExternalConnected": True,
        "CurrentCapacity": 60,
        "MaxCapacity": 100,
    }


@pytest.fixture
def on_battery_bag() -> dict[str, Any]:
    """Property bag of a laptop running on battery."""
    return {
        "IsCharging": False,
        "ExternalConnected": False,
        "CurrentCapacity": 80,
        "MaxCapacity": 100,
    }


@pytest.fixture
def clock():
    """Settable clock; call ``clock.now = ...`` to move time."""

    class Clock:
        now = 1000.0

        def __call__(self) -> float:
            return self.now

    return Clock()


@pytest.fixture
def make_engine(clock):
    """Factory building an engine over an in-memory register table and bag."""

    def _make(
        registers: dict[str, tuple[str, Any]] | None = None,
        bag: dict[str, Any] | None = None,
        store: CalibrationStore | None = None,
        model_id: str = MODEL_ID,
        **kwargs,
    ) -> ReconciliationEngine:
        transport = StaticRegisterTransport.from_values(registers or {})
        store = store if store is not None else CalibrationStore()
        calibration = CalibrationState.load(store, model_id)
        reader = RegisterSourceReader(
            transport,
            preferred_keys=calibration.preferred_keys,
            cached_cpu_temperature_keys=calibration.cpu_temperature_keys,
        )
        source = StaticPropertySource(bag)
        kwargs.setdefault("clock", clock)
        return ReconciliationEngine(
            reader,
            BatteryInfoReader(source),
            store,
            calibration=calibration,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_snapshot():
    """Factory for snapshots with a given power balance."""

    def _make(system_in: float = 60.0, system_load: float = 45.0, battery_power: float = 15.0, **kwargs):
        kwargs.setdefault("timestamp", 0.0)
        return PowerSnapshot(system_in=system_in, system_load=system_load, battery_power=battery_power, **kwargs)

    return _make
