import logging
import math
import time
import requests
import certifi

from dataclasses import dataclass
from enum import Enum

from errors import CommandRejected, TransientUnavailable

log = logging.getLogger(__name__)

MILES_TO_KM = 1.609344


class ChargingState(str, Enum):
    DISCONNECTED = "Disconnected"
    STOPPED = "Stopped"
    STARTING = "Starting"
    CHARGING = "Charging"
    COMPLETE = "Complete"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class ChargeState:
    charging_state: ChargingState
    battery_level: int
    charge_limit_soc: int
    charger_actual_current: int = 0
    charge_current_request: int = 0
    charge_current_request_max: int = 0
    charger_voltage: float = 0.0
    charger_phases: int | None = None
    minutes_to_full_charge: int = 0
    time_to_full_charge: float = 0.0
    charge_energy_added: float = 0.0
    ideal_battery_range: float = 0.0

    @classmethod
    def from_api(cls, data: dict):
        return cls(
            charging_state=ChargingState.parse(data.get("charging_state")),
            battery_level=int(data.get("battery_level") or 0),
            charge_limit_soc=int(data.get("charge_limit_soc") or 0),
            charger_actual_current=int(data.get("charger_actual_current") or 0),
            charge_current_request=int(data.get("charge_current_request") or 0),
            charge_current_request_max=int(data.get("charge_current_request_max") or 0),
            charger_voltage=float(data.get("charger_voltage") or 0),
            charger_phases=data.get("charger_phases"),
            minutes_to_full_charge=int(data.get("minutes_to_full_charge") or 0),
            time_to_full_charge=float(data.get("time_to_full_charge") or 0),
            charge_energy_added=float(data.get("charge_energy_added") or 0),
            ideal_battery_range=float(data.get("ideal_battery_range") or 0),
        )

    @property
    def is_charging(self) -> bool:
        return self.charging_state == ChargingState.CHARGING

    def range_km(self) -> tuple:
        """(current, projected at 100%) ideal range in km."""
        current = MILES_TO_KM * self.ideal_battery_range
        full = current * 100 / self.battery_level if self.battery_level else 0.0
        return round(current), round(full)


class ChargeStateCache:
    """
    Last fetched charge state. While the charger is Stopped the entry stays
    fresh for `stopped_ttl` seconds so an idle car isn't polled awake.
    Any other state is refetched every time.
    """

    def __init__(self, stopped_ttl: float, clock=time.monotonic):
        self.stopped_ttl = stopped_ttl
        self.clock = clock
        self.value = None
        self.fetched_at = None

    def put(self, value):
        self.value = value
        self.fetched_at = self.clock()

    def fresh(self):
        if self.value is None or self.fetched_at is None:
            return None
        if self.value.charging_state != ChargingState.STOPPED:
            return None
        if self.clock() - self.fetched_at >= self.stopped_ttl:
            return None
        return self.value

    def invalidate(self):
        self.fetched_at = None


class OwnerApi:
    def __init__(
        self,
        access_token: str | None = None,
        refresh_token: str | None = None,
        client_id: str = "ownerapi",
        audience: str = "https://owner-api.teslamotors.com",
        token_url: str = "https://auth.tesla.com/oauth2/v3/token",
        owner_api_url: str = "https://owner-api.teslamotors.com"
    ):
        self.access_token  = access_token
        self.refresh_token = refresh_token
        self.client_id     = client_id
        self.audience      = audience
        self.token_url     = token_url
        self.owner_api_url = owner_api_url.rstrip("/")
        self.session       = requests.Session()
        # force use of certifi's CA bundle
        self.session.verify = certifi.where()

    def _refresh_access_token(self):
        if not self.refresh_token:
            raise RuntimeError("Tesla access token rejected and no refresh token configured")
        payload = {
            "grant_type":    "refresh_token",
            "client_id":     self.client_id,
            "refresh_token": self.refresh_token,
            "audience":      self.audience
        }
        r = self.session.post(self.token_url, data=payload)
        r.raise_for_status()
        j = r.json()
        self.access_token  = j["access_token"]
        # Tesla may rotate the refresh token
        self.refresh_token = j.get("refresh_token", self.refresh_token)

    def _call_with_reauth(self, method: str, path: str, **kwargs):
        if not self.access_token:
            self._refresh_access_token()
        url = f"{self.owner_api_url}/{path.lstrip('/')}"

        def _do():
            headers = {"Authorization": f"Bearer {self.access_token}"}
            return self.session.request(method, url, headers=headers, **kwargs)

        r = _do()
        if r.status_code == 401:
            log.info("Tesla session expired. Re-authenticating...")
            self._refresh_access_token()
            r = _do()
        elif r.status_code == 429:
            log.warning("Tesla rate limit hit (429). Sleeping and retrying once...")
            time.sleep(10)
            r = _do()
        if r.status_code == 408:
            # vehicle asleep or offline
            raise TransientUnavailable("vehicle unavailable")
        r.raise_for_status()
        return r.json()

    def get(self, path: str):
        return self._call_with_reauth("GET", path).get("response")

    def post(self, path: str, body: dict | None = None) -> dict:
        return self._call_with_reauth("POST", path, json=body or {})


class TeslaVehicle:
    """Charge state and charging commands for one vehicle."""

    def __init__(self, api: OwnerApi, minimum_state_of_charge: int = 0,
                 stopped_cache_minutes: float = 15, clock=time.monotonic):
        self.api = api
        self.minimum_state_of_charge = minimum_state_of_charge
        self.cache = ChargeStateCache(stopped_cache_minutes * 60, clock=clock)
        self.vehicle_id = None

    def bind(self, vehicle_id):
        self.vehicle_id = vehicle_id
        self.cache = ChargeStateCache(self.cache.stopped_ttl, clock=self.cache.clock)

    @property
    def charge_state(self) -> ChargeState | None:
        """Last known state, fresh or not."""
        return self.cache.value

    def get_charge_state(self, force: bool = False) -> ChargeState | None:
        if not force:
            cached = self.cache.fresh()
            if cached is not None:
                return cached
        data = self.api.get(f"api/1/vehicles/{self.vehicle_id}/data_request/charge_state")
        state = ChargeState.from_api(data) if data else None
        self.cache.put(state)
        return state

    def _command(self, name: str, body: dict | None = None, ok_reasons=()):
        self.cache.invalidate()
        j = self.api.post(f"api/1/vehicles/{self.vehicle_id}/command/{name}", body)
        if j.get("error"):
            raise CommandRejected(name, j["error"])
        result = j.get("response") or {}
        if result.get("result"):
            return True
        reason = result.get("reason") or ""
        if reason in ok_reasons:
            return True
        raise CommandRejected(name, reason)

    def set_charging_amps(self, amps: int):
        log.info("Charging changed to: %s amps", amps)
        return self._command("set_charging_amps", {"charging_amps": int(amps)})

    def start_charging(self):
        return self._command("charge_start", ok_reasons=("is_charging",))

    def stop_charging(self, reason: str) -> bool:
        log.info("Stopping charging due to %s", reason)
        state = self.charge_state
        if state is None or not state.is_charging:
            current = state.charging_state.value if state else "unknown"
            log.info("Charging not stopped as vehicle is currently in state %s.", current)
            return False
        if state.battery_level < self.minimum_state_of_charge:
            log.info("Battery SOC %s is less than minimum of %s. Charging not stopped.",
                     state.battery_level, self.minimum_state_of_charge)
            return False
        return self._command("charge_stop", ok_reasons=("not_charging",))

    def set_charge_limit(self, percent: int):
        return self._command("set_charge_limit", {"percent": int(percent)},
                             ok_reasons=("already_set",))

    def set_charge_limit_if_lower(self, percent: int) -> bool:
        state = self.charge_state or self.get_charge_state()
        if state is not None and percent > state.charge_limit_soc:
            return self.set_charge_limit(percent)
        return False

    def vehicles(self) -> list:
        return self.api.get("api/1/vehicles") or []

    def drive_state(self, vehicle_id) -> dict:
        return self.api.get(f"api/1/vehicles/{vehicle_id}/data_request/drive_state") or {}


def distance_m(lat1, lon1, lat2, lon2) -> float:
    """Great-circle distance in metres."""
    d1 = math.radians(lat1)
    d2 = math.radians(lat2)
    dlon = math.radians(lon2) - math.radians(lon1)
    a = math.sin((d2 - d1) / 2.0) ** 2 + math.cos(d1) * math.cos(d2) * math.sin(dlon / 2.0) ** 2
    return 6376500.0 * (2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a)))
