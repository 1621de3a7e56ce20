import pytest

from config import parse_settings
from sensors import Telemetry
from tesla import ChargeState, ChargingState


BASE_CONFIG = {
    "tesla_access_token": "token",
    "telemetry_source": "powerwall",
    "default_charge_curve": "Solar",
    "charge_curves": [
        {"name": "Solar", "points": [{"soc": 70, "buffer": 0.25}, {"soc": 50, "buffer": 0.5}]},
        {"name": "Solar+", "points": [{"soc": 101, "buffer": -1.0}]},
        {"name": "Flat", "points": [{"soc": 101, "buffer": 0.0}]},
    ],
    "min_loop_sleep_duration": 30,
    "max_loop_sleep_duration": 300,
}


def make_settings(**overrides):
    cfg = dict(BASE_CONFIG)
    cfg.update(overrides)
    return parse_settings(cfg)


def make_state(**kw):
    defaults = dict(
        charging_state=ChargingState.CHARGING,
        battery_level=50,
        charge_limit_soc=90,
        charger_actual_current=5,
        charge_current_request=5,
        charge_current_request_max=32,
        charger_voltage=240.0,
        charger_phases=1,
        minutes_to_full_charge=60,
    )
    defaults.update(kw)
    return ChargeState(**defaults)


class FakeVehicle:
    """Records commands instead of talking to a car."""

    def __init__(self, state=None, cached=True):
        self.state = state
        self.cached = state if cached else None
        self.commands = []
        self.fetches = 0
        self.fail_with = None
        self.stop_reasons = []

    @property
    def charge_state(self):
        return self.cached

    def get_charge_state(self, force=False):
        self.fetches += 1
        self.cached = self.state
        return self.state

    def _record(self, *command):
        if self.fail_with is not None:
            raise self.fail_with
        self.commands.append(command)
        return True

    def set_charging_amps(self, amps):
        return self._record("amps", amps)

    def start_charging(self):
        return self._record("start")

    def stop_charging(self, reason):
        self.stop_reasons.append(reason)
        return self._record("stop")

    def set_charge_limit_if_lower(self, percent):
        return self._record("limit_if_lower", percent)


class FakeTelemetry:
    def __init__(self, *readings):
        self.readings = list(readings)
        self.calls = 0

    def get_telemetry(self):
        self.calls += 1
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def reading(grid, load=5.0, solar=3.0):
    return Telemetry(grid_kw=grid, solar_kw=solar, load_kw=load)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()
