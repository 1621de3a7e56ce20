import logging
import time
import requests
import certifi

from dataclasses import dataclass
from datetime import datetime

log = logging.getLogger(__name__)

COGNITO_URL = "https://cognito-idp.ap-southeast-2.amazonaws.com"


@dataclass(frozen=True)
class Telemetry:
    """Site power flow in kW. grid_kw < 0 means exporting."""
    grid_kw: float
    solar_kw: float
    load_kw: float
    timestamp: datetime | None = None
    daytime: bool | None = None

    @property
    def is_empty(self) -> bool:
        return self.grid_kw == 0 and self.load_kw == 0 and self.solar_kw == 0

    @classmethod
    def empty(cls):
        return cls(0.0, 0.0, 0.0)


@dataclass(frozen=True)
class Site:
    address: str
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class PulseSensor:
    """Pulse energy monitor. Id token refreshed through AWS Cognito."""

    def __init__(self, base_url: str, client_id: str, refresh_token: str):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.refresh_token = refresh_token
        self.id_token = None
        self.expires_at = 0.0
        self.site_id = None
        self.session = requests.Session()
        # force use of certifi's CA bundle
        self.session.verify = certifi.where()

    def _refresh_access_token(self):
        if self.id_token and time.time() < self.expires_at:
            return
        payload = {
            "ClientId": self.client_id,
            "AuthFlow": "REFRESH_TOKEN_AUTH",
            "AuthParameters": {"REFRESH_TOKEN": self.refresh_token},
        }
        headers = {
            "X-Amz-Target": "AWSCognitoIdentityProviderService.InitiateAuth",
            "Content-Type": "application/x-amz-json-1.1",
        }
        r = self.session.post(COGNITO_URL, json=payload, headers=headers)
        r.raise_for_status()
        result = r.json()["AuthenticationResult"]
        self.id_token = result["IdToken"]
        self.expires_at = time.time() + int(result.get("ExpiresIn", 3600))

    def _get(self, path: str) -> dict:
        self._refresh_access_token()
        headers = {"Authorization": f"Bearer {self.id_token}"}
        r = self.session.get(f"{self.base_url}/{path}", headers=headers)
        if r.status_code == 401:
            # expired early? force a refresh and retry once
            self.expires_at = 0
            self._refresh_access_token()
            headers["Authorization"] = f"Bearer {self.id_token}"
            r = self.session.get(f"{self.base_url}/{path}", headers=headers)
        r.raise_for_status()
        return r.json()

    def _get_site_id(self):
        if self.site_id is None:
            user = self._get("prod/v1/user")
            site_ids = user.get("site_ids") or []
            if not user.get("user_id") or not site_ids:
                raise RuntimeError("Pulse is not currently available")
            self.site_id = site_ids[0]
        return self.site_id

    def get_site(self) -> Site:
        site = self._get(f"prod/v1/sites/{self._get_site_id()}")
        return Site(
            address=site.get("address", ""),
            latitude=site.get("lat"),
            longitude=site.get("lon"),
        )

    def get_telemetry(self) -> Telemetry:
        live = self._get(f"prod/v1/sites/{self._get_site_id()}/live_data_summary")
        if not live:
            return Telemetry.empty()
        weather = live.get("weather") or {}
        if weather:
            log.debug("Conditions %sc and %s", weather.get("temperature"), weather.get("description"))
        return Telemetry(
            grid_kw=float(live.get("grid") or 0),
            solar_kw=float(live.get("solar") or 0),
            load_kw=float(live.get("consumption") or 0),
            timestamp=datetime.now(),
            daytime=weather.get("daytime"),
        )


class PowerwallSensor:
    """Tesla energy site live_status. The API reports watts."""

    def __init__(self, vehicle_api):
        # shares the owner API session and token handling with the vehicle client
        self.api = vehicle_api
        self._site_id = None

    def _get_site_id(self):
        if self._site_id is None:
            resp = self.api.get("api/1/products")
            # legacy shape?
            if isinstance(resp, dict) and "energy_sites" in resp:
                self._site_id = resp["energy_sites"][0]["id"]
            else:
                sites = [p for p in resp or [] if "energy_site_id" in p]
                if not sites:
                    raise RuntimeError(f"Could not find energy_site_id in {resp!r}")
                self._site_id = sites[0]["energy_site_id"]
        return self._site_id

    def get_site(self) -> Site:
        info = self.api.get(f"api/1/energy_sites/{self._get_site_id()}/site_info") or {}
        return Site(address=info.get("site_name", ""))

    def get_telemetry(self) -> Telemetry:
        live = self.api.get(f"api/1/energy_sites/{self._get_site_id()}/live_status")
        if not live:
            return Telemetry.empty()
        return Telemetry(
            grid_kw=float(live.get("grid_power") or 0) / 1000.0,
            solar_kw=float(live.get("solar_power") or 0) / 1000.0,
            load_kw=float(live.get("load_power") or 0) / 1000.0,
            timestamp=datetime.now(),
        )
