"""Linux power-supply class as a device-property bag.

Maps ``/sys/class/power_supply/*/uevent`` onto the same keys the battery
service uses so the reconciliation engine does not care where the bag came
from. Kernel values are micro-units; the bag carries milli-units.
"""

import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_POWER_SUPPLY_ROOT = Path("/sys/class/power_supply")


def _read_uevent(path: Path) -> dict[str, str]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return {}
    values = {}
    for line in text.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip().removeprefix("POWER_SUPPLY_")] = value.strip()
    return values


def _micro_to_milli(values: dict[str, str], key: str) -> int | None:
    raw = values.get(key)
    if raw is None:
        return None
    try:
        return int(int(raw) / 1000)
    except ValueError:
        return None


def _int(values: dict[str, str], key: str) -> int | None:
    raw = values.get(key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _energy_to_mah(values: dict[str, str], key: str, voltage_uv: int | None) -> int | None:
    """µWh -> mAh at the given voltage (µV)."""
    energy = _int(values, key)
    if energy is None or not voltage_uv or voltage_uv <= 0:
        return None
    return int(round(energy * 1000 / voltage_uv))


class SysfsPropertySource:
    """Callable property source reading the kernel power-supply class."""

    def __init__(self, root: str | Path = DEFAULT_POWER_SUPPLY_ROOT):
        self.root = Path(root)

    def _supplies(self) -> tuple[dict[str, str] | None, list[dict[str, str]]]:
        battery = None
        mains = []
        if not self.root.exists():
            return None, []
        for entry in sorted(self.root.iterdir()):
            values = _read_uevent(entry / "uevent")
            if not values:
                continue
            kind = values.get("TYPE", "")
            if kind == "Battery" and battery is None and values.get("PRESENT", "1") != "0":
                battery = values
            elif kind in ("Mains", "USB", "USB_C", "USB_PD"):
                mains.append(values)
        return battery, mains

    def __call__(self) -> dict[str, Any] | None:
        battery, mains = self._supplies()
        if battery is None:
            return None

        status = battery.get("STATUS", "").lower()
        external = any(m.get("ONLINE") == "1" for m in mains) or status in ("charging", "full", "not charging")

        bag: dict[str, Any] = {
            "IsCharging": status == "charging",
            "ExternalConnected": external,
        }

        voltage_now_uv = _int(battery, "VOLTAGE_NOW")
        # Energy-reporting drivers give µWh; convert at the design voltage when known
        conversion_uv = _int(battery, "VOLTAGE_MIN_DESIGN") or voltage_now_uv

        # Prefer charge (µAh) so capacities come out as mAh; fall back to capacity percent
        charge_now = _micro_to_milli(battery, "CHARGE_NOW")
        charge_full = _micro_to_milli(battery, "CHARGE_FULL")
        if charge_now is None or not charge_full:
            charge_now = _energy_to_mah(battery, "ENERGY_NOW", conversion_uv)
            charge_full = _energy_to_mah(battery, "ENERGY_FULL", conversion_uv)
        if charge_now is not None and charge_full:
            bag["CurrentCapacity"] = charge_now
            bag["MaxCapacity"] = charge_full
        elif (capacity := _int(battery, "CAPACITY")) is not None:
            bag["CurrentCapacity"] = capacity
            bag["MaxCapacity"] = 100
        design = _micro_to_milli(battery, "CHARGE_FULL_DESIGN")
        if design is None:
            design = _energy_to_mah(battery, "ENERGY_FULL_DESIGN", conversion_uv)
        if design is not None:
            bag["DesignCapacity"] = design

        if (voltage := _micro_to_milli(battery, "VOLTAGE_NOW")) is not None:
            bag["Voltage"] = voltage
        current = _micro_to_milli(battery, "CURRENT_NOW")
        if current is None and voltage_now_uv and (power_uw := _int(battery, "POWER_NOW")) is not None:
            current = int(round(power_uw * 1000 / voltage_now_uv))
        if current is not None:
            # Kernel reports magnitude on many drivers; sign by charge state
            if status == "discharging" and current > 0:
                current = -current
            bag["InstantAmperage"] = current
        if (cycles := _int(battery, "CYCLE_COUNT")) is not None and cycles > 0:
            bag["CycleCount"] = cycles

        for source_key, bag_key in (
            ("MANUFACTURER", "Manufacturer"),
            ("MODEL_NAME", "DeviceName"),
            ("SERIAL_NUMBER", "Serial"),
        ):
            if battery.get(source_key):
                bag[bag_key] = battery[source_key]

        online = [m for m in mains if m.get("ONLINE") == "1"]
        if online:
            adapter = online[0]
            details: dict[str, Any] = {"Name": adapter.get("NAME")}
            if (voltage := _micro_to_milli(adapter, "VOLTAGE_NOW")) is not None:
                details["AdapterVoltage"] = voltage
            if (current := _micro_to_milli(adapter, "CURRENT_MAX")) is not None:
                details["Current"] = current
            bag["AdapterDetails"] = details

        return bag
