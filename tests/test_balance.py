"""Tests for the power conservation checks."""

import pytest

from powerflow.balance import (
    Tolerances,
    balance_tolerance,
    direction_conflicts,
    is_balance_consistent,
    power_balance_mismatch,
    resolve_flow_direction,
)


class TestConservation:
    """in ~= load + battery, within max(1 W, 30% of the implied flow)."""

    def test_tolerance_has_absolute_floor(self):
        assert balance_tolerance(0.5) == 1.0
        assert balance_tolerance(-20.0) == pytest.approx(6.0)

    def test_mismatch(self):
        assert power_balance_mismatch(60.0, 45.0, 12.0) == pytest.approx(3.0)

    @pytest.mark.parametrize(
        "system_in,system_load,battery_power,expected",
        [
            (60.0, 45.0, 15.0, True),
            (60.0, 45.0, 12.0, True),
            (60.0, 45.0, -15.0, False),
            (0.0, 12.0, -12.0, True),
            (0.0, 12.0, -11.2, True),
            (0.0, 0.0, 0.9, True),
            (0.0, 0.0, 1.5, False),
        ],
    )
    def test_consistency(self, system_in, system_load, battery_power, expected):
        assert is_balance_consistent(system_in, system_load, battery_power) is expected

    def test_custom_tolerances(self):
        assert not is_balance_consistent(60.0, 45.0, 12.0, floor=1.0, relative=0.1)


class TestDirectionConflicts:
    def test_opposite_sign_beyond_tolerance(self):
        assert direction_conflicts(-15.0, 15.0)

    def test_small_implied_flow_never_overrules(self):
        assert not direction_conflicts(-3.0, 0.8)

    def test_same_sign_is_not_a_conflict(self):
        assert not direction_conflicts(5.0, 15.0)

    def test_zero_reading_is_not_a_conflict(self):
        assert not direction_conflicts(0.0, -15.0)


class TestFlowDirection:
    """Direction shown in a flow diagram."""

    def test_agreeing_rate_is_reliable(self):
        direction = resolve_flow_direction(-12.0, 0.0, 12.0)
        assert direction.rate_reliable
        assert not direction.charging
        assert direction.magnitude == pytest.approx(12.0)

    def test_no_meaningful_net_trusts_rate(self):
        direction = resolve_flow_direction(3.0, 20.0, 19.5)
        assert direction.rate_reliable
        assert direction.charging

    def test_rate_in_noise_falls_back_to_hint(self):
        direction = resolve_flow_direction(0.01, 10.0, 10.0, charging_hint=True)
        assert not direction.rate_reliable
        assert direction.charging
        assert not direction.active

    def test_negative_inputs_are_clamped(self):
        direction = resolve_flow_direction(0.0, -5.0, 20.0)
        assert not direction.charging
        assert direction.magnitude == pytest.approx(20.0)


class TestTolerancesFromConfig:
    def test_defaults(self):
        assert Tolerances.from_config(None) == Tolerances()

    def test_overrides(self):
        tolerances = Tolerances.from_config({"consistency": {"absolute_floor": 2, "relative_tolerance": 0.2}})
        assert tolerances.absolute_floor == 2.0
        assert tolerances.relative == 0.2
        assert tolerances.rate_noise == 0.05
