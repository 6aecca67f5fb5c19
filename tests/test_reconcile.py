"""Tests for the reconciliation engine - the behavior consumers actually see."""

import dataclasses
from unittest.mock import MagicMock

import pytest

from conftest import MODEL_ID
from powerflow.calibration import CalibrationStore
from powerflow.constants import DetailLevel
from powerflow.models import PowerSettings, StatusBarItem
from powerflow.reconcile import (
    ReconciliationEngine,
    flow_direction,
    infer_current_scale,
    normalize_millivolts,
    normalize_volts,
    sanitize_time_remaining,
)
from powerflow.sources import BatteryInfo, BatteryInfoReader, StaticPropertySource


class TestEndToEnd:
    """Adapter 65 W, system 40 W, battery charging."""

    def test_charging_from_adapter(self, make_engine, charging_bag):
        engine = make_engine({"PDTR": ("flt", 65.0), "PSTR": ("flt", 40.0)}, charging_bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power == pytest.approx(25.0)
        assert snapshot.battery_charging is True
        assert snapshot.is_charging is True
        assert snapshot.adapter_power == pytest.approx(65.0)
        assert snapshot.screen_power_available is False
        assert snapshot.screen_power == 0.0
        assert snapshot.package_power_available is False
        assert snapshot.is_power_balance_consistent
        assert snapshot.battery_level == 60

    def test_failure_yields_empty_snapshot(self, charging_bag):
        reader = MagicMock()
        reader.read_power_data.side_effect = RuntimeError("transport exploded")
        engine = ReconciliationEngine(
            reader, BatteryInfoReader(StaticPropertySource(charging_bag)), CalibrationStore(), model_id=MODEL_ID
        )

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power == 0.0
        assert snapshot.screen_power_available is False
        assert snapshot.temperature_c is None

    def test_nothing_available(self, make_engine):
        snapshot = make_engine().read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power_source == "none"
        assert snapshot.battery_level == 0
        assert snapshot.battery_level_available is False
        assert snapshot.battery_health_percent is None
        assert snapshot.battery_remaining_wh is None
        assert snapshot.time_remaining_minutes is None
        assert snapshot.temperature_c is None
        assert snapshot.battery_current_ma is None


class TestPolarityLearning:
    """Rate polarity is learned once per model and then trusted."""

    def test_learned_once_and_not_rederived(self, make_engine, on_battery_bag, charging_bag):
        store = CalibrationStore()
        store.save_polarity = MagicMock(wraps=store.save_polarity)
        engine = make_engine({"PPBR": ("flt", -4.2)}, on_battery_bag, store=store)

        first = engine.read_snapshot(DetailLevel.FULL)
        engine.reader.transport.set_value("PPBR", "flt", -3.8)
        engine.battery_reader.source.bag = charging_bag
        second = engine.read_snapshot(DetailLevel.FULL)

        store.save_polarity.assert_called_once_with(MODEL_ID, 1)
        assert first.battery_power == pytest.approx(-4.2)
        assert second.battery_power == pytest.approx(-3.8)
        assert engine.polarity == 1

    def test_inverted_polarity_flips_later_readings(self, make_engine, charging_bag, on_battery_bag):
        store = CalibrationStore()
        store.save_polarity = MagicMock(wraps=store.save_polarity)
        engine = make_engine({"PPBR": ("flt", -3.8)}, charging_bag, store=store)

        first = engine.read_snapshot(DetailLevel.FULL)
        engine.reader.transport.set_value("PPBR", "flt", 4.2)
        engine.battery_reader.source.bag = on_battery_bag
        second = engine.read_snapshot(DetailLevel.FULL)

        store.save_polarity.assert_called_once_with(MODEL_ID, -1)
        assert store.load_polarity(MODEL_ID) == -1
        assert first.battery_power == pytest.approx(3.8)
        assert second.battery_power == pytest.approx(-4.2)

    def test_ambiguous_state_does_not_learn(self, make_engine):
        """External power without charging says nothing about the sign."""
        bag = {"IsCharging": False, "ExternalConnected": True, "CurrentCapacity": 100, "MaxCapacity": 100}
        engine = make_engine({"PPBR": ("flt", -2.0)}, bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert engine.calibration.polarity is None
        assert snapshot.battery_power == pytest.approx(-2.0)

    def test_noise_does_not_learn(self, make_engine, on_battery_bag):
        engine = make_engine({"PPBR": ("flt", 0.03)}, on_battery_bag)
        engine.read_snapshot(DetailLevel.FULL)
        assert engine.calibration.polarity is None

    def test_stored_polarity_is_reused(self, make_engine, on_battery_bag):
        store = CalibrationStore()
        store.save_polarity(MODEL_ID, -1)
        engine = make_engine({"PPBR": ("flt", 6.0)}, on_battery_bag, store=store)

        assert engine.read_snapshot(DetailLevel.FULL).battery_power == pytest.approx(-6.0)

    def test_platform_name_migrates_polarity_key(self, make_engine):
        store = CalibrationStore()
        store.save_polarity("J316sAP", -1)
        bag = {"IsCharging": False, "ExternalConnected": True, "CurrentCapacity": 90, "MaxCapacity": 100}
        engine = make_engine({"PPBR": ("flt", 5.0), "RPlt": ("ch8*", "J316sAP")}, bag, store=store)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert engine.polarity_key == "J316sAP"
        assert snapshot.battery_power == pytest.approx(-5.0)


class TestConservation:
    """Battery power precedence and the direction cross-check."""

    @pytest.fixture
    def calibrated_store(self):
        store = CalibrationStore()
        store.save_polarity(MODEL_ID, 1)
        return store

    def test_agreeing_rate_is_used(self, make_engine, charging_bag, calibrated_store):
        engine = make_engine(
            {"PDTR": ("flt", 60.0), "PSTR": ("flt", 45.0), "PPBR": ("flt", 15.0)}, charging_bag, store=calibrated_store
        )

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power_source == "rate"
        assert snapshot.battery_power == pytest.approx(15.0)

    def test_rate_within_tolerance_keeps_its_value(self, make_engine, charging_bag, calibrated_store):
        engine = make_engine(
            {"PDTR": ("flt", 60.0), "PSTR": ("flt", 45.0), "PPBR": ("flt", 12.0)}, charging_bag, store=calibrated_store
        )

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power == pytest.approx(12.0)
        assert snapshot.is_power_balance_consistent

    def test_opposite_sign_takes_balance_direction(self, make_engine, charging_bag, calibrated_store):
        """Rate says -15 W while the balance implies +15 W: keep 15 W, flip the sign."""
        engine = make_engine(
            {"PDTR": ("flt", 60.0), "PSTR": ("flt", 45.0), "PPBR": ("flt", -15.0)}, charging_bag, store=calibrated_store
        )

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power_source == "rate"
        assert snapshot.battery_power == pytest.approx(15.0)
        assert snapshot.battery_charging is True

    def test_summary_prefers_telemetry(self, make_engine):
        bag = {
            "IsCharging": True,
            "ExternalConnected": True,
            "CurrentCapacity": 50,
            "PowerTelemetryData": {
                "SystemPowerIn": 30000,
                "SystemLoad": 20000,
                "BatteryPower": 9500,
                "AdapterEfficiencyLoss": 1500,
            },
        }
        engine = make_engine({}, bag)

        snapshot = engine.read_snapshot(DetailLevel.SUMMARY)

        assert snapshot.system_in == pytest.approx(30.0)
        assert snapshot.system_load == pytest.approx(20.0)
        assert snapshot.battery_power_source == "telemetry"
        assert snapshot.battery_power == pytest.approx(9.5)
        assert snapshot.adapter_power == pytest.approx(31.5)
        assert snapshot.efficiency_loss == pytest.approx(1.5)

    def test_voltage_times_current(self, make_engine):
        bag = {"IsCharging": False, "ExternalConnected": False, "CurrentCapacity": 70, "Voltage": 12000, "InstantAmperage": -1500}
        engine = make_engine({}, bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power_source == "voltage_current"
        assert snapshot.battery_power == pytest.approx(-18.0)
        assert snapshot.battery_voltage_mv == pytest.approx(12000.0)

    def test_on_battery_load_only(self, make_engine, on_battery_bag):
        engine = make_engine({"PSTR": ("flt", 12.0)}, on_battery_bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.system_in == 0.0
        assert snapshot.battery_power_source == "load"
        assert snapshot.battery_power == pytest.approx(-12.0)

    def test_adapter_voltage_and_current(self, make_engine, charging_bag):
        engine = make_engine(
            {"VD0R": ("flt", 20.0), "ID0R": ("flt", 3.0), "PSTR": ("flt", 45.0)}, charging_bag
        )

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.adapter_input_power == pytest.approx(60.0)
        assert snapshot.adapter_power == pytest.approx(60.0)
        assert snapshot.system_in == pytest.approx(60.0)
        assert snapshot.battery_power == pytest.approx(15.0)


class TestFlowDirection:
    def test_reliable_rate(self, make_snapshot):
        direction = flow_direction(make_snapshot(60.0, 45.0, 14.0))
        assert direction.rate_reliable
        assert direction.charging
        assert direction.magnitude == pytest.approx(14.0)

    def test_disagreeing_rate_uses_net(self, make_snapshot):
        direction = flow_direction(make_snapshot(60.0, 45.0, -3.0))
        assert not direction.rate_reliable
        assert direction.charging
        assert direction.magnitude == pytest.approx(15.0)

    def test_no_net_flow_uses_charging_hint(self, make_snapshot):
        direction = flow_direction(make_snapshot(0.0, 0.0, 0.0, is_charging=True))
        assert direction.charging
        assert not direction.active


class TestDerivedFields:
    """Health, remaining energy, levels, cells and time remaining."""

    def test_health_is_clamped(self, make_engine):
        engine = make_engine({"B0FC": ("ui16", 6000), "B0DC": ("ui16", 4000)})
        assert engine.read_snapshot(DetailLevel.FULL).battery_health_percent == pytest.approx(120.0)

    def test_health(self, make_engine):
        engine = make_engine({"B0FC": ("ui16", 4500), "B0DC": ("ui16", 4000)})
        assert engine.read_snapshot(DetailLevel.FULL).battery_health_percent == pytest.approx(112.5)

    def test_remaining_energy_prefers_registers(self, make_engine):
        bag = {"CurrentCapacity": 4000, "MaxCapacity": 6000, "Voltage": 11000}
        engine = make_engine({"SBAR": ("ui16", 5000), "B0AV": ("ui16", 12600)}, bag)

        assert engine.read_snapshot(DetailLevel.FULL).battery_remaining_wh == pytest.approx(63.0)

    def test_remaining_energy_from_bag(self, make_engine):
        bag = {"CurrentCapacity": 4000, "MaxCapacity": 6000, "Voltage": 11000}
        engine = make_engine({}, bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_remaining_wh == pytest.approx(44.0)
        assert snapshot.battery_level == 67
        assert snapshot.battery_level_precise == pytest.approx(66.667, abs=0.01)

    def test_precise_level_from_register_percent(self, make_engine, charging_bag):
        engine = make_engine({"BRSC": ("flt", 61.4)}, charging_bag)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_level == 60
        assert snapshot.battery_level_precise == pytest.approx(61.4, abs=1e-4)
        assert snapshot.battery_percent_register == 61
        assert snapshot.battery_level_available is True

    def test_empty_battery_is_distinct_from_unknown(self, make_engine):
        engine = make_engine({}, {"CurrentCapacity": 0, "MaxCapacity": 100})

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_level == 0
        assert snapshot.battery_level_available is True

    def test_level_from_registers_without_bag(self, make_engine):
        engine = make_engine({"SBAR": ("ui16", 3000), "B0FC": ("ui16", 4000)})

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_level_available is True
        assert snapshot.battery_level_precise == pytest.approx(75.0)

    def test_cell_voltages_normalized(self, make_engine):
        engine = make_engine({"SBA1": ("ui16", 4150), "SBA2": ("ui16", 4148)})
        assert engine.read_snapshot(DetailLevel.FULL).battery_cell_voltages == pytest.approx((4.15, 4.148))

    def test_published_readings_are_immutable(self, make_engine):
        engine = make_engine({"SBA1": ("ui16", 4150), "F0Ac": ("flt", 2000.0), "F0Mx": ("flt", 5000.0)})

        readings = engine.read_snapshot(DetailLevel.FULL).diagnostics.readings

        assert readings.battery_cell_voltages == (4150.0,)
        assert len(readings.fan_readings) == 1
        with pytest.raises(AttributeError):
            readings.battery_cell_voltages.append(4100.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            readings.battery_rate = 99.0

    def test_lid_closed_hides_screen_power(self, make_engine):
        engine = make_engine({"PDBR": ("flt", 3.5), "MSLD": ("flag", True)})

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.lid_closed is True
        assert snapshot.screen_power_available is False

    def test_register_time_to_empty(self, make_engine, on_battery_bag):
        engine = make_engine({"B0TE": ("ui16", 240)}, on_battery_bag)
        assert engine.read_snapshot(DetailLevel.FULL).time_remaining_minutes == 240

    def test_time_reader_fallback(self, make_engine, on_battery_bag):
        time_reader = MagicMock()
        time_reader.time_remaining_minutes.return_value = 180
        engine = make_engine({}, on_battery_bag, time_reader=time_reader)

        assert engine.read_snapshot(DetailLevel.FULL).time_remaining_minutes == 180

    @pytest.mark.parametrize(
        "minutes,charging,external,expected",
        [
            (600, True, True, 600),
            (800, True, True, None),
            (120, False, True, None),
            (2000, False, False, 2000),
            (3000, False, False, None),
            (0, False, False, None),
            (None, False, False, None),
        ],
    )
    def test_time_sanitizing(self, minutes, charging, external, expected):
        info = BatteryInfo(is_charging=charging, is_external_connected=external)
        assert sanitize_time_remaining(minutes, info) == expected


class TestUnitsAndScale:
    def test_voltage_normalization(self):
        assert normalize_volts(12600) == pytest.approx(12.6)
        assert normalize_volts(12.6) == pytest.approx(12.6)
        assert normalize_volts(-1) == 0.0
        assert normalize_millivolts(12.6) == pytest.approx(12600)
        assert normalize_millivolts(12600) == 12600

    def test_current_scale_inference(self):
        assert infer_current_scale(-15, -1500) == 100
        assert infer_current_scale(-1500, -1500) == 1
        assert infer_current_scale(10, 3500) is None
        assert infer_current_scale(0.005, 5) is None

    def test_scale_extrapolates_register_current(self, make_engine, on_battery_bag):
        bag = dict(on_battery_bag, InstantAmperage=-1500)
        engine = make_engine({"B0AC": ("si16", -15)}, bag)

        first = engine.read_snapshot(DetailLevel.FULL)
        engine.battery_reader.source.bag = on_battery_bag
        engine.reader.transport.set_value("B0AC", "si16", -20)
        second = engine.read_snapshot(DetailLevel.FULL)

        assert first.battery_current_ma == -1500
        assert engine.battery_current_scale == 100
        assert second.battery_current_ma == pytest.approx(-2000)

    def test_register_current_unused_without_scale(self, make_engine, on_battery_bag):
        engine = make_engine({"B0AC": ("si16", -15)}, on_battery_bag)
        assert engine.read_snapshot(DetailLevel.FULL).battery_current_ma is None


class TestTemperature:
    """Provenance chain: register CPU -> generic sensor -> cache -> battery."""

    def test_register_cpu_temperature(self, make_engine):
        store = CalibrationStore()
        engine = make_engine({"TC10": ("sp78", 55.0)}, store=store)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.temperature_c == pytest.approx(55.0)
        assert snapshot.temperature_source == "SMC TC10"
        assert store.load_cached_temperature(MODEL_ID).value == pytest.approx(55.0)
        assert store.load_discovered_keys(MODEL_ID) == ["TC10"]

    def test_stale_stored_keys_are_replaced(self, make_engine):
        store = CalibrationStore()
        store.save_discovered_keys(MODEL_ID, ["Tp09"])
        engine = make_engine({"TC10": ("sp78", 55.0)}, store=store)

        first = engine.read_snapshot(DetailLevel.FULL)
        second = engine.read_snapshot(DetailLevel.FULL)

        assert first.temperature_c is None
        assert second.temperature_source == "SMC TC10"
        assert store.load_discovered_keys(MODEL_ID) == ["TC10"]

    def test_generic_then_cache_then_battery(self, make_engine, clock):
        temperature_reader = MagicMock()
        temperature_reader.read_cpu_temperature.return_value = 48.0
        engine = make_engine({"TB0T": ("sp78", 31.0)}, temperature_reader=temperature_reader)

        first = engine.read_snapshot(DetailLevel.FULL)
        clock.now += 3
        second = engine.read_snapshot(DetailLevel.FULL)
        temperature_reader.read_cpu_temperature.return_value = None
        clock.now += 200
        third = engine.read_snapshot(DetailLevel.FULL)

        assert (first.temperature_c, first.temperature_source) == (48.0, "HID CPU")
        assert (second.temperature_c, second.temperature_source) == (48.0, "HID CPU")
        assert temperature_reader.read_cpu_temperature.call_count == 2
        assert third.temperature_source == "SMC Battery"
        assert third.temperature_c == pytest.approx(31.0)
        assert third.battery_temperature_c == pytest.approx(31.0)

    def test_cache_persisted_at_most_once_a_minute(self, make_engine, clock):
        store = CalibrationStore()
        store.save_cached_temperature = MagicMock(wraps=store.save_cached_temperature)
        engine = make_engine({"TC10": ("sp78", 55.0)}, store=store)

        engine.read_snapshot(DetailLevel.FULL)
        clock.now += 10
        engine.read_snapshot(DetailLevel.FULL)
        clock.now += 60
        engine.read_snapshot(DetailLevel.FULL)

        assert store.save_cached_temperature.call_count == 2


class TestReadHints:
    def test_hints_follow_display_configuration(self, make_engine):
        engine = make_engine()

        screen = engine.read_hints(PowerSettings(status_bar_item=StatusBarItem.SCREEN), DetailLevel.SUMMARY)
        package = engine.read_hints(PowerSettings(status_bar_format="{heatpipe} W"), DetailLevel.SUMMARY)

        assert screen.needs_screen_power and not screen.needs_package_power
        assert package.needs_package_power and not package.needs_screen_power

    def test_temperature_needed_when_cache_is_stale(self, make_engine, clock):
        engine = make_engine({"TC10": ("sp78", 50.0)})
        engine.read_snapshot(DetailLevel.FULL)

        assert not engine.read_hints(PowerSettings(), DetailLevel.SUMMARY).needs_temperature
        assert engine.read_hints(PowerSettings(status_bar_format="{temp}"), DetailLevel.SUMMARY).needs_temperature
        clock.now += 31
        assert engine.read_hints(PowerSettings(), DetailLevel.SUMMARY).needs_temperature

    def test_empty_format_falls_back_to_default(self):
        assert PowerSettings(status_bar_format="   ").resolved_format() == "{power} | {battery}"


class TestKeyPersistence:
    def test_resolved_alias_is_saved(self, make_engine):
        store = CalibrationStore()
        engine = make_engine({"PCPC": ("flt", 7.5)}, store=store)

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.package_power_key == "PCPC"
        assert snapshot.package_power_label == "CPU Package"
        assert store.load_preferred_keys(MODEL_ID) == {"package_power": "PCPC"}
