import pytest
import requests

from click.testing import CliRunner

from conftest import make_settings
from errors import TransientUnavailable
from sensors import Site, Telemetry
from solarcharge import cli, prepare_session

HOME = Site("1 Sun St", -33.8, 151.2)


class Vehicles:
    def __init__(self, vehicles, drive=None):
        self._vehicles = vehicles
        self.drive = drive or {}
        self.bound = None

    def vehicles(self):
        if isinstance(self._vehicles, Exception):
            raise self._vehicles
        return self._vehicles

    def drive_state(self, vehicle_id):
        drive = self.drive.get(vehicle_id, {})
        if isinstance(drive, Exception):
            raise drive
        return drive

    def bind(self, vehicle_id):
        self.bound = vehicle_id


class Sun:
    def __init__(self, solar_kw=3.0, daytime=True, site=HOME, error=None):
        self.reading = Telemetry(grid_kw=-1.0, solar_kw=solar_kw, load_kw=1.0, daytime=daytime)
        self.site = site
        self.error = error

    def get_site(self):
        if self.error:
            raise self.error
        return self.site

    def get_telemetry(self):
        return self.reading


@pytest.fixture
def settings():
    return make_settings(site_radius_m=100)


def test_binds_car_parked_at_home(settings):
    vehicles = Vehicles(
        [{"id": 1, "state": "online"}, {"id": 2, "state": "online", "display_name": "Sparky"}],
        drive={1: {"latitude": -33.9, "longitude": 151.2}, 2: {"latitude": -33.8, "longitude": 151.2}},
    )
    assert prepare_session(vehicles, Sun(), settings)
    assert vehicles.bound == 2


def test_refuses_moving_car(settings):
    vehicles = Vehicles([{"id": 1, "state": "online"}],
                        drive={1: {"latitude": -33.8, "longitude": 151.2, "speed": 12}})
    assert not prepare_session(vehicles, Sun(), settings)
    assert vehicles.bound is None


def test_refuses_at_night(settings):
    vehicles = Vehicles([{"id": 1, "state": "online"}])
    assert not prepare_session(vehicles, Sun(daytime=False), settings)
    assert not prepare_session(vehicles, Sun(solar_kw=0.0), settings)
    assert vehicles.bound is None


def test_sleeping_cars_are_skipped(settings, capsys):
    vehicles = Vehicles([{"id": 1, "state": "asleep"}])
    assert not prepare_session(vehicles, Sun(), settings)
    assert "awake" in capsys.readouterr().out


def test_car_away_from_home(settings, capsys):
    vehicles = Vehicles([{"id": 1, "state": "online"}], drive={1: {"latitude": -34.8, "longitude": 151.2}})
    assert not prepare_session(vehicles, Sun(), settings)
    assert "Closest is" in capsys.readouterr().out


def test_site_without_location_takes_first_awake_car(settings):
    vehicles = Vehicles([{"id": 1, "state": "asleep"}, {"id": 2, "state": "online"}])
    assert prepare_session(vehicles, Sun(site=Site("Home")), settings)
    assert vehicles.bound == 2


def test_telemetry_down(settings):
    vehicles = Vehicles([{"id": 1, "state": "online"}])
    assert not prepare_session(vehicles, Sun(error=requests.ConnectionError("down")), settings)


def test_vehicle_list_unavailable(settings, capsys):
    vehicles = Vehicles(TransientUnavailable("vehicle unavailable"))
    assert not prepare_session(vehicles, Sun(), settings)
    assert "not currently available" in capsys.readouterr().out


def test_car_dozing_off_is_skipped(settings, capsys):
    vehicles = Vehicles(
        [{"id": 1, "state": "online"}, {"id": 2, "state": "online"}],
        drive={1: TransientUnavailable("vehicle unavailable"), 2: {"latitude": -33.8, "longitude": 151.2}},
    )
    assert prepare_session(vehicles, Sun(), settings)
    assert vehicles.bound == 2

    vehicles = Vehicles([{"id": 1, "state": "online"}], drive={1: requests.ConnectionError("down")})
    assert not prepare_session(vehicles, Sun(), settings)
    assert vehicles.bound is None
    assert "awake" in capsys.readouterr().out


CONFIG = """\
tesla_access_token: token
telemetry_source: powerwall
charge_curves:
  - name: Solar
    points:
      - {soc: 101, buffer: 0.2}
"""


def test_unknown_curve_is_reported(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    result = CliRunner().invoke(cli, ["--config", str(path), "charge", "Nope"])
    assert result.exit_code != 0
    assert "Charge curve Nope not found" in result.output


def test_bad_config_is_reported(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("charge_curves: []\n")
    result = CliRunner().invoke(cli, ["--config", str(path), "charge"])
    assert result.exit_code != 0
    assert "Error" in result.output


def test_limit_range_checked(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    result = CliRunner().invoke(cli, ["--config", str(path), "limit", "40"])
    assert result.exit_code == 2
