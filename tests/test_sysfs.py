"""Tests for the Linux power-supply property source."""

import pytest

from powerflow.constants import DetailLevel
from powerflow.sources import CapacityUnits, SysfsPropertySource, parse_battery_info


def write_supply(root, name, lines):
    supply = root / name
    supply.mkdir()
    (supply / "uevent").write_text("\n".join(f"POWER_SUPPLY_{line}" for line in lines) + "\n")


@pytest.fixture
def power_supply_root(tmp_path):
    write_supply(
        tmp_path,
        "BAT0",
        [
            "NAME=BAT0",
            "TYPE=Battery",
            "STATUS=Discharging",
            "PRESENT=1",
            "VOLTAGE_NOW=12450000",
            "CURRENT_NOW=1500000",
            "CHARGE_FULL_DESIGN=5000000",
            "CHARGE_FULL=4500000",
            "CHARGE_NOW=3000000",
            "CYCLE_COUNT=87",
            "MANUFACTURER=ACME",
            "MODEL_NAME=5B10W",
            "SERIAL_NUMBER=1234",
        ],
    )
    write_supply(tmp_path, "AC", ["NAME=AC", "TYPE=Mains", "ONLINE=0"])
    return tmp_path


class TestSysfsPropertySource:
    """Kernel uevent files mapped onto the property bag."""

    def test_discharging_battery(self, power_supply_root):
        bag = SysfsPropertySource(power_supply_root)()

        assert bag["IsCharging"] is False
        assert bag["ExternalConnected"] is False
        assert bag["CurrentCapacity"] == 3000
        assert bag["MaxCapacity"] == 4500
        assert bag["DesignCapacity"] == 5000
        assert bag["Voltage"] == 12450
        assert bag["InstantAmperage"] == -1500
        assert bag["CycleCount"] == 87
        assert "AdapterDetails" not in bag

    def test_bag_parses_as_mah(self, power_supply_root):
        info = parse_battery_info(SysfsPropertySource(power_supply_root)())

        assert info.capacity_units == CapacityUnits.MAH
        assert info.battery_percent == 67
        assert info.battery_details.manufacturer == "ACME"
        assert info.battery_details.serial_number == "1234"

    def test_online_adapter(self, tmp_path):
        write_supply(tmp_path, "BAT0", ["TYPE=Battery", "STATUS=Charging", "CAPACITY=55"])
        write_supply(
            tmp_path,
            "ADP1",
            ["NAME=ADP1", "TYPE=USB_PD", "ONLINE=1", "VOLTAGE_NOW=20000000", "CURRENT_MAX=3250000"],
        )

        bag = SysfsPropertySource(tmp_path)()

        assert bag["IsCharging"] is True
        assert bag["ExternalConnected"] is True
        assert bag["CurrentCapacity"] == 55
        assert bag["AdapterDetails"] == {"Name": "ADP1", "AdapterVoltage": 20000, "Current": 3250}

    def test_no_battery(self, tmp_path):
        write_supply(tmp_path, "AC", ["TYPE=Mains", "ONLINE=1"])
        assert SysfsPropertySource(tmp_path)() is None

    def test_missing_root(self, tmp_path):
        assert SysfsPropertySource(tmp_path / "absent")() is None


class TestEnergyReportingBattery:
    """Drivers that report µWh and µW instead of µAh and µA."""

    @pytest.fixture
    def energy_root(self, tmp_path):
        write_supply(
            tmp_path,
            "BAT1",
            [
                "TYPE=Battery",
                "STATUS=Discharging",
                "VOLTAGE_NOW=11800000",
                "POWER_NOW=9500000",
                "ENERGY_NOW=40000000",
                "ENERGY_FULL=50000000",
                "ENERGY_FULL_DESIGN=57000000",
            ],
        )
        return tmp_path

    def test_energy_mapped_to_mah(self, energy_root):
        bag = SysfsPropertySource(energy_root)()

        assert bag["CurrentCapacity"] == 3390
        assert bag["MaxCapacity"] == 4237
        assert bag["DesignCapacity"] == 4831
        assert bag["Voltage"] == 11800
        assert bag["InstantAmperage"] == -805

    def test_design_voltage_used_for_conversion(self, tmp_path):
        write_supply(
            tmp_path,
            "BAT0",
            [
                "TYPE=Battery",
                "STATUS=Full",
                "VOLTAGE_MIN_DESIGN=10000000",
                "VOLTAGE_NOW=12600000",
                "ENERGY_NOW=50000000",
                "ENERGY_FULL=50000000",
            ],
        )

        bag = SysfsPropertySource(tmp_path)()

        assert bag["CurrentCapacity"] == 5000
        assert bag["MaxCapacity"] == 5000
        assert "InstantAmperage" not in bag

    def test_engine_reports_discharge(self, energy_root, make_engine):
        engine = make_engine({}, SysfsPropertySource(energy_root)())

        snapshot = engine.read_snapshot(DetailLevel.FULL)

        assert snapshot.battery_power_source == "voltage_current"
        assert snapshot.battery_power == pytest.approx(-9.5, abs=0.01)
        assert snapshot.battery_remaining_wh == pytest.approx(40.0, abs=0.05)
