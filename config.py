import yaml
from dataclasses import dataclass

from errors import SolarChargeError


class ConfigError(SolarChargeError):
    pass


@dataclass(frozen=True)
class ChargePoint:
    soc: int
    buffer: float


@dataclass(frozen=True)
class ChargeCurve:
    """SOC-indexed table of grid buffers (kW)."""
    name: str
    points: tuple

    def buffer_for(self, battery_level: int) -> float:
        """
        Buffer of the first point whose SOC is above battery_level.
        Past the last point the last buffer keeps applying.
        """
        for point in self.points:
            if point.soc > battery_level:
                return point.buffer
        return self.points[-1].buffer


@dataclass
class Settings:
    charge_curves: dict
    default_charge_curve: str

    tesla_access_token: str | None = None
    tesla_refresh_token: str | None = None
    tesla_client_id: str = "ownerapi"

    telemetry_source: str = "pulse"
    pulse_url: str = "https://api.pulseenergy.com.au"
    pulse_client_id: str | None = None
    pulse_refresh_token: str | None = None

    # charging logic
    min_loop_sleep_duration: int = 30
    max_loop_sleep_duration: int = 300
    grid_max_draw: float = 5.0
    grid_max_sustained_draw: float = 1.0
    sustained_draw_duration: int = 600
    not_charging_duration: int = 1800
    ramp_up_percentage: float = 0.5
    ramp_down_percentage: float = 1.0
    minimum_charging_amps: int = 5
    minimum_state_of_charge: int = 20
    nominal_voltage: float = 240.0
    stopped_cache_minutes: float = 15
    priority_allows_stop: bool = False

    # trip
    trip_priority_curve: str = "Solar+"
    trip_secondary_curve: str = "Solar"
    trip_check_interval: int = 60

    site_radius_m: float = 100
    log_level: str = "INFO"

    def curve(self, name: str | None = None) -> ChargeCurve | None:
        name = name or self.default_charge_curve
        for curve_name, curve in self.charge_curves.items():
            if curve_name.lower() == name.lower():
                return curve
        return None


def _parse_curve(raw) -> ChargeCurve:
    name = raw.get("name")
    if not name:
        raise ConfigError("Charge curve without a name")
    points = raw.get("points") or []
    if not points:
        raise ConfigError(f"Charge curve '{name}' has no points")
    try:
        parsed = sorted(
            (ChargePoint(int(p["soc"]), float(p["buffer"])) for p in points),
            key=lambda p: p.soc,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Bad point in charge curve '{name}': {e}") from e
    return ChargeCurve(name=name, points=tuple(parsed))


def _percentage(cfg, key, default):
    value = float(cfg.get(key, default))
    if not (0 < value <= 1):
        raise ConfigError(f"{key} must be in (0, 1], got {value}")
    return value


def parse_settings(cfg: dict) -> Settings:
    """Build Settings from the raw YAML mapping, applying defaults."""
    if not isinstance(cfg, dict):
        raise ConfigError("Config file must contain a mapping")

    curves = {}
    for raw in cfg.get("charge_curves") or []:
        curve = _parse_curve(raw)
        curves[curve.name] = curve
    if not curves:
        raise ConfigError("At least one charge curve is required")

    default_curve = cfg.get("default_charge_curve") or next(iter(curves))
    if default_curve.lower() not in {n.lower() for n in curves}:
        raise ConfigError(f"Default charge curve '{default_curve}' not found")

    if not cfg.get("tesla_access_token") and not cfg.get("tesla_refresh_token"):
        raise ConfigError("No Tesla token: set tesla_access_token or tesla_refresh_token")

    source = cfg.get("telemetry_source", "pulse")
    if source not in ("pulse", "powerwall"):
        raise ConfigError(f"Unknown telemetry_source '{source}'")
    if source == "pulse" and not cfg.get("pulse_refresh_token"):
        raise ConfigError("No Pulse token: set pulse_refresh_token")

    min_loop = int(cfg.get("min_loop_sleep_duration", 30))
    max_loop = int(cfg.get("max_loop_sleep_duration", 300))
    if min_loop <= 0 or max_loop < min_loop:
        raise ConfigError("Loop sleep durations must satisfy 0 < min <= max")

    minimum_amps = int(cfg.get("minimum_charging_amps", 5))
    if minimum_amps < 1:
        raise ConfigError("minimum_charging_amps must be at least 1")

    return Settings(
        charge_curves=curves,
        default_charge_curve=default_curve,
        tesla_access_token=cfg.get("tesla_access_token"),
        tesla_refresh_token=cfg.get("tesla_refresh_token"),
        tesla_client_id=cfg.get("tesla_client_id", "ownerapi"),
        telemetry_source=source,
        pulse_url=cfg.get("pulse_url", "https://api.pulseenergy.com.au"),
        pulse_client_id=cfg.get("pulse_client_id"),
        pulse_refresh_token=cfg.get("pulse_refresh_token"),
        min_loop_sleep_duration=min_loop,
        max_loop_sleep_duration=max_loop,
        grid_max_draw=float(cfg.get("grid_max_draw", 5.0)),
        grid_max_sustained_draw=float(cfg.get("grid_max_sustained_draw", 1.0)),
        sustained_draw_duration=int(cfg.get("sustained_draw_duration", 600)),
        not_charging_duration=int(cfg.get("not_charging_duration", 1800)),
        ramp_up_percentage=_percentage(cfg, "ramp_up_percentage", 0.5),
        ramp_down_percentage=_percentage(cfg, "ramp_down_percentage", 1.0),
        minimum_charging_amps=minimum_amps,
        minimum_state_of_charge=int(cfg.get("minimum_state_of_charge", 20)),
        nominal_voltage=float(cfg.get("nominal_voltage", 240.0)),
        stopped_cache_minutes=float(cfg.get("stopped_cache_minutes", 15)),
        priority_allows_stop=bool(cfg.get("priority_allows_stop", False)),
        trip_priority_curve=cfg.get("trip_priority_curve", "Solar+"),
        trip_secondary_curve=cfg.get("trip_secondary_curve", "Solar"),
        trip_check_interval=int(cfg.get("trip_check_interval", 60)),
        site_radius_m=float(cfg.get("site_radius_m", 100)),
        log_level=cfg.get("log_level", "INFO"),
    )


def load_settings(path: str) -> Settings:
    with open(path) as f:
        cfg = yaml.safe_load(f)
    return parse_settings(cfg or {})
