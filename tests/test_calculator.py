import pytest

from conftest import FakeVehicle, make_settings, make_state
from controller import AmpDeltaCalculator, kw_per_amp, power_to_amps, ramp
from errors import ChargerUnavailable
from tesla import ChargingState


def calculator(state, cached=True, **overrides):
    vehicle = FakeVehicle(state, cached=cached)
    return AmpDeltaCalculator(vehicle, make_settings(**overrides)), vehicle


def test_ramp_keeps_at_least_one_amp():
    assert ramp(8, 0.5) == 4
    assert ramp(1, 0.2) == 1
    assert ramp(3, 0.1) == 1
    assert ramp(0, 0.5) == 0


def test_power_to_amps_floors():
    state = make_state(charger_voltage=240.0, charger_phases=1)
    assert power_to_amps(2.0, state, 240) == 8
    assert power_to_amps(0.2, state, 240) == 0


def test_kw_per_amp_uses_nominal_voltage_when_stopped():
    state = make_state(charging_state=ChargingState.STOPPED, charger_voltage=2.0, charger_phases=None)
    assert kw_per_amp(state, 230) == pytest.approx(0.23)
    three_phase = make_state(charger_voltage=230.0, charger_phases=3)
    assert kw_per_amp(three_phase, 240) == pytest.approx(0.69)


class TestCharging:

    def test_surplus_ramps_up(self):
        # 2kW surplus at 240V is 8A, half of it applied
        calc, vehicle = calculator(make_state(charger_actual_current=5), ramp_up_percentage=0.5)
        assert calc.charge_delta(-2.0, 1.0) == 5 + round(8 * 0.5)
        assert vehicle.commands == [("amps", 9)]

    def test_surplus_clamped_to_request_max(self):
        calc, vehicle = calculator(make_state(charger_actual_current=5, charge_current_request_max=7),
                                   ramp_up_percentage=0.5)
        assert calc.charge_delta(-2.0, 1.0) == 7
        assert vehicle.commands == [("amps", 7)]

    def test_at_request_max_no_change(self):
        calc, vehicle = calculator(make_state(charger_actual_current=32, charge_current_request_max=32))
        assert calc.charge_delta(-3.0, 10.0) == 0
        assert vehicle.commands == []

    def test_import_reduces_but_not_below_minimum(self):
        calc, vehicle = calculator(make_state(charger_actual_current=10), minimum_charging_amps=2)
        assert calc.charge_delta(3.0, 5.0) == 2
        assert vehicle.commands == [("amps", 2)]

    def test_import_partial_reduction(self):
        # 0.5kW is 2A at 240V
        calc, vehicle = calculator(make_state(charger_actual_current=10), minimum_charging_amps=2)
        assert calc.charge_delta(0.5, 5.0) == 8

    def test_small_import_still_sheds_one_amp(self):
        calc, vehicle = calculator(make_state(charger_actual_current=10), minimum_charging_amps=2)
        assert calc.charge_delta(0.1, 5.0) == 9

    def test_ramp_down_percentage_applied(self):
        calc, vehicle = calculator(make_state(charger_actual_current=20), minimum_charging_amps=2,
                                   ramp_down_percentage=0.5)
        # 2.5kW is 10A at 240V, half shed
        assert calc.charge_delta(2.5, 6.0) == 15

    def test_at_minimum_no_reduction(self):
        calc, vehicle = calculator(make_state(charger_actual_current=5), minimum_charging_amps=5)
        assert calc.charge_delta(2.0, 5.0) == 0
        assert vehicle.commands == []

    def test_not_ramped_defers_reduction(self):
        # home load of 1kW is only 4A while the car says it draws 10A
        calc, vehicle = calculator(make_state(charger_actual_current=10), minimum_charging_amps=2)
        assert calc.charge_delta(3.0, 1.0) == 0
        assert vehicle.commands == []

    @pytest.mark.parametrize("delta", [-5.0, -2.0, -0.5, 0.3, 1.0, 4.0, 9.0])
    @pytest.mark.parametrize("current", [3, 6, 12, 30])
    def test_new_amps_within_bounds(self, delta, current):
        calc, vehicle = calculator(make_state(charger_actual_current=current, charge_current_request_max=32),
                                   minimum_charging_amps=5)
        calc.charge_delta(delta, 10.0)
        for _, amps in vehicle.commands:
            assert 5 <= amps <= 32


class TestStopped:

    @pytest.mark.parametrize("delta, starts", [
        (-1.5, True),
        (-1.25, True),
        (-1.125, False),
        (-0.5, False),
        (0.5, False),
    ])
    def test_starts_only_with_enough_surplus(self, delta, starts):
        # minimum 5A at the 240V nominal supply needs 1200W
        state = make_state(charging_state=ChargingState.STOPPED, charger_voltage=2.0, charger_phases=None)
        calc, vehicle = calculator(state, cached=False, minimum_charging_amps=5)
        assert calc.charge_delta(delta, 1.0) == 0
        assert vehicle.commands == ([("start",)] if starts else [])

    def test_battery_at_limit_is_fatal(self):
        state = make_state(charging_state=ChargingState.STOPPED, battery_level=89, charge_limit_soc=90)
        calc, vehicle = calculator(state, cached=False)
        with pytest.raises(ChargerUnavailable):
            calc.charge_delta(-5.0, 1.0)
        assert vehicle.commands == []


class TestOtherStates:

    def test_disconnected_is_fatal(self):
        calc, _ = calculator(make_state(charging_state=ChargingState.DISCONNECTED), cached=False)
        with pytest.raises(ChargerUnavailable):
            calc.charge_delta(1.0, 1.0)

    def test_missing_state_is_fatal(self):
        calc, _ = calculator(None)
        with pytest.raises(ChargerUnavailable):
            calc.charge_delta(1.0, 1.0)

    def test_complete_prestages_minimum(self):
        state = make_state(charging_state=ChargingState.COMPLETE, charge_current_request=16)
        calc, vehicle = calculator(state, minimum_charging_amps=5)
        assert calc.charge_delta(1.0, 1.0) == 0
        assert vehicle.commands == [("amps", 5)]

    def test_complete_already_at_minimum(self):
        state = make_state(charging_state=ChargingState.COMPLETE, charge_current_request=5)
        calc, vehicle = calculator(state, minimum_charging_amps=5)
        calc.charge_delta(1.0, 1.0)
        assert vehicle.commands == []

    def test_starting_is_not_a_failure(self):
        calc, vehicle = calculator(make_state(charging_state=ChargingState.STARTING))
        assert calc.charge_delta(-3.0, 1.0) == 0
        assert vehicle.commands == []

    def test_tiny_surplus_skips_state_fetch(self):
        calc, vehicle = calculator(make_state())
        assert calc.charge_delta(-0.1, 1.0) == 0
        assert vehicle.fetches == 0
