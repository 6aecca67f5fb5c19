"""Power conservation checks.

The machine is modelled as adapter -> junction -> (system load + battery). With
sign convention battery power > 0 = charging, a consistent reading satisfies
``system_in ~= system_load + battery_power``.
"""

from dataclasses import dataclass
from typing import Any

from .constants import (
    BALANCE_ABSOLUTE_FLOOR_W,
    BALANCE_RELATIVE_TOLERANCE,
    BATTERY_POWER_NOISE_W,
    RATE_NOISE_THRESHOLD_W,
)


@dataclass(frozen=True)
class Tolerances:
    """Empirical thresholds used by the conservation checks."""

    absolute_floor: float = BALANCE_ABSOLUTE_FLOOR_W
    relative: float = BALANCE_RELATIVE_TOLERANCE
    rate_noise: float = RATE_NOISE_THRESHOLD_W
    battery_power_noise: float = BATTERY_POWER_NOISE_W

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "Tolerances":
        consistency = (config or {}).get("consistency", {})
        return cls(
            absolute_floor=float(consistency.get("absolute_floor", BALANCE_ABSOLUTE_FLOOR_W)),
            relative=float(consistency.get("relative_tolerance", BALANCE_RELATIVE_TOLERANCE)),
            rate_noise=float(consistency.get("rate_noise", RATE_NOISE_THRESHOLD_W)),
            battery_power_noise=float(consistency.get("battery_power_noise", BATTERY_POWER_NOISE_W)),
        )


def balance_tolerance(
    net_magnitude: float,
    floor: float = BALANCE_ABSOLUTE_FLOOR_W,
    relative: float = BALANCE_RELATIVE_TOLERANCE,
) -> float:
    """Allowed discrepancy for a given implied battery flow magnitude."""
    return max(floor, abs(net_magnitude) * relative)


def power_balance_mismatch(system_in: float, system_load: float, battery_power: float) -> float:
    return abs(system_in - system_load - battery_power)


def is_balance_consistent(
    system_in: float,
    system_load: float,
    battery_power: float,
    floor: float = BALANCE_ABSOLUTE_FLOOR_W,
    relative: float = BALANCE_RELATIVE_TOLERANCE,
) -> bool:
    net = system_in - system_load
    mismatch = power_balance_mismatch(system_in, system_load, battery_power)
    return mismatch <= balance_tolerance(net, floor, relative)


def direction_conflicts(
    battery_power: float,
    implied: float,
    floor: float = BALANCE_ABSOLUTE_FLOOR_W,
    relative: float = BALANCE_RELATIVE_TOLERANCE,
) -> bool:
    """True when the implied balance contradicts the sign of ``battery_power``.

    Only a meaningful implied flow (above the absolute floor) can overrule a
    source, and only when the two differ by more than the tolerance.
    """
    if abs(implied) <= floor:
        return False
    if battery_power * implied >= 0:
        return False
    return abs(battery_power - implied) > balance_tolerance(implied, floor, relative)


@dataclass(frozen=True)
class FlowDirection:
    """Battery flow as drawn in a flow diagram."""

    charging: bool
    magnitude: float
    rate_reliable: bool

    @property
    def active(self) -> bool:
        return self.magnitude > RATE_NOISE_THRESHOLD_W


def resolve_flow_direction(
    battery_power: float,
    system_in: float,
    system_load: float,
    charging_hint: bool = False,
    floor: float = BALANCE_ABSOLUTE_FLOOR_W,
    relative: float = BALANCE_RELATIVE_TOLERANCE,
) -> FlowDirection:
    """Cross-check the reported battery power against the implied balance.

    Args:
        battery_power: Reported battery power (+ charging)
        system_in: Power entering the system from the adapter
        system_load: Power consumed by the system
        charging_hint: OS charging flag, used only when nothing else is meaningful

    Returns:
        FlowDirection with the trusted direction and magnitude
    """
    system_in = max(system_in, 0.0)
    system_load = max(system_load, 0.0)
    magnitude = abs(battery_power)
    net = system_in - system_load
    net_magnitude = abs(net)
    net_meaningful = net_magnitude > floor
    allowed = balance_tolerance(net_magnitude, floor, relative)
    reliable = magnitude > RATE_NOISE_THRESHOLD_W and (
        not net_meaningful or (battery_power * net >= 0 and abs(magnitude - net_magnitude) <= allowed)
    )

    if reliable:
        charging = battery_power > 0
        if net_meaningful and battery_power * net < 0:
            charging = net > 0
    elif net_meaningful:
        charging = net > 0
    else:
        charging = charging_hint

    if reliable:
        shown = magnitude
    elif net_meaningful:
        shown = net_magnitude
    else:
        shown = magnitude

    return FlowDirection(charging=charging, magnitude=shown, rate_reliable=reliable)
