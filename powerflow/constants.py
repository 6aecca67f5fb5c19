"""Embedded-controller register keys and reconciliation constants."""

from enum import Enum


# Power rails read every tick
class PowerKey:
    BATTERY_RATE = "PPBR"  # Battery charge/discharge rate (polarity varies by model)
    DELIVERY_RATE = "PDTR"  # Power delivered into the system from the adapter
    SYSTEM_TOTAL = "PSTR"  # Total system load
    SCREEN = "PDBR"  # Display/backlight power
    ADAPTER_VOLTAGE = "VD0R"  # Adapter input voltage
    ADAPTER_CURRENT = "ID0R"  # Adapter input current


# Battery gauge registers
class BatteryKey:
    FULL_CHARGE_CAPACITY = "B0FC"
    DESIGN_CAPACITY = "B0DC"
    CURRENT = "B0AC"
    CYCLE_COUNT = "B0CT"
    CHARGING_STATUS = "CHCC"
    TIME_TO_EMPTY = "B0TE"
    TIME_TO_FULL = "B0TF"
    TEMPERATURE = "TB0T"
    CELL_VOLTAGES = ("SBA1", "SBA2", "SBA3")


# Platform and chassis
class PlatformKey:
    LID_STATE = "MSLD"
    PLATFORM_NAME = "RPlt"
    FAN_COUNT = "FNum"


# Alias lists, most preferred first
PACKAGE_POWER_KEYS = ["PHPC", "PCPC", "PCPT", "PC0R", "PCPR"]
BATTERY_VOLTAGE_KEYS = ["B0AV", "SBAV"]
BATTERY_PERCENT_KEYS = ["SBAS", "BRSC"]
BATTERY_CAPACITY_KEYS = ["SBAR", "B0RM"]
CHARGE_CONTROL_KEYS = ["CHTE", "CH0B", "CH0C"]
DISCHARGE_CONTROL_KEYS = ["CHIE", "CH0J", "CH0I"]

CPU_TEMPERATURE_KEYS = [
    "Tp09", "Tp0T",
    "Tp01", "Tp05", "Tp0D", "Tp0H", "Tp0L", "Tp0P", "Tp0X", "Tp0b",
    "Tg05", "Tg0D", "Tg0L", "Tg0T",
    "TC10", "TC11", "TC12", "TC13",
    "TC20", "TC21", "TC22", "TC23",
    "TC30", "TC31", "TC32", "TC33",
    "TC40", "TC41", "TC42", "TC43",
    "TC50", "TC51", "TC52", "TC53",
    "Tg04", "Tg0C", "Tg0K", "Tg0S",
    "Tp1h", "Tp1t", "Tp1p", "Tp1l",
    "Tp0f", "Tp0j",
    "Tg0f", "Tg0j",
    "Te05", "Te0L", "Te0P", "Te0S",
    "Tf04", "Tf09", "Tf0A", "Tf0B", "Tf0D", "Tf0E",
    "Tf44", "Tf49", "Tf4A", "Tf4B", "Tf4D", "Tf4E",
    "Tf14", "Tf18", "Tf19", "Tf1A", "Tf24", "Tf28", "Tf29", "Tf2A",
    "Te09", "Te0H",
    "Tp0V", "Tp0Y", "Tp0e",
    "Tg0G", "Tg0H", "Tg1U", "Tg1k", "Tg0d", "Tg0e", "Tg0k",
]

MAX_FANS = 6
MAX_PLAUSIBLE_TEMPERATURE_C = 150.0
CPU_TEMPERATURE_SCAN_COOLDOWN = 30.0  # seconds before rescanning after an empty scan

# Noise floors and conservation tolerances (empirical, overridable via config)
RATE_NOISE_THRESHOLD_W = 0.05
BATTERY_POWER_NOISE_W = 0.01
BALANCE_ABSOLUTE_FLOOR_W = 1.0
BALANCE_RELATIVE_TOLERANCE = 0.3

# Current-scale inference between OS and register battery current
CURRENT_SCALE_CANDIDATES = [0.001, 0.01, 0.1, 1.0, 10.0, 100.0, 1000.0]
CURRENT_SCALE_TOLERANCE = 2.0

# Time-remaining plausibility bounds (minutes)
MAX_CHARGE_MINUTES = 12 * 60
MAX_DISCHARGE_MINUTES = 48 * 60

# Battery health clamp (firmware full-charge capacity may exceed design)
MAX_HEALTH_PERCENT = 120.0


class DetailLevel(str, Enum):
    """How much of the register set to read on a tick."""

    SUMMARY = "summary"
    FULL = "full"
