"""
Weather alert source — current conditions for monitored cities.

Fetches OpenWeatherMap current weather for a fixed list of Indian cities
and turns threshold breaches into alert documents. Best-effort adapter:
the provider's wire format is not a contract, and a city that fails to
fetch or parse is logged and skipped.

Thresholds (metric units):
    Flood           1 h rain > 20 mm      (high when > 50 mm)    radius 25 km
    Severe weather  wind > 15 m/s, temp > 35 °C or temp < 5 °C   radius 30 km
                    (high when wind > 25, temp > 40 or temp < 0)

Alerts are valid for 24 h. Without an API key the source yields two demo
alerts (Mumbai flood, Chennai cyclone) valid for 6 h.

External ids are ``weather_<City>_<type>_<hour bucket>``, where the bucket
is the epoch second at the start of the current UTC hour, so repeated
fetches within the hour update one alert instead of creating many.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from geoalert.alerts.models import utc_now
from geoalert.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class City:
    name: str
    lat: float
    lon: float
    state: str


MONITORED_CITIES: List[City] = [
    City("Mumbai", 19.0760, 72.8777, "Maharashtra"),
    City("Delhi", 28.7041, 77.1025, "Delhi"),
    City("Bangalore", 12.9716, 77.5946, "Karnataka"),
    City("Chennai", 13.0827, 80.2707, "Tamil Nadu"),
    City("Kolkata", 22.5726, 88.3639, "West Bengal"),
    City("Hyderabad", 17.3850, 78.4867, "Telangana"),
    City("Pune", 18.5204, 73.8567, "Maharashtra"),
    City("Ahmedabad", 23.0225, 72.5714, "Gujarat"),
]

FLOOD_RAIN_MM = 20.0
FLOOD_RAIN_HIGH_MM = 50.0
WIND_MS = 15.0
WIND_HIGH_MS = 25.0
HEAT_C = 35.0
HEAT_HIGH_C = 40.0
COLD_C = 5.0
COLD_HIGH_C = 0.0

FLOOD_RADIUS_KM = 25.0
SEVERE_RADIUS_KM = 30.0
VALIDITY = timedelta(hours=24)
MOCK_VALIDITY = timedelta(hours=6)

# Pause between city requests (provider rate limits)
REQUEST_SPACING_SECONDS = 0.1


def hour_bucket(now: datetime) -> int:
    """Epoch seconds at the start of ``now``'s UTC hour."""
    return int(now.replace(minute=0, second=0, microsecond=0).timestamp())


def external_id_for(city: str, alert_type: str, now: datetime) -> str:
    return f"weather_{city}_{alert_type}_{hour_bucket(now)}"


def _weather_snapshot(weather: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    main = weather.get("main", {})
    wind = weather.get("wind", {})
    visibility = weather.get("visibility")
    return {
        "temperature": main.get("temp"),
        "humidity": main.get("humidity"),
        "precipitation": (weather.get("rain") or {}).get("1h", 0),
        "wind_speed": wind.get("speed"),
        "wind_direction": wind.get("deg"),
        "pressure": main.get("pressure"),
        "visibility_km": visibility / 1000 if visibility is not None else None,
        "last_updated": now.isoformat(),
    }


def _base_document(city: City, now: datetime, until: datetime) -> Dict[str, Any]:
    return {
        "location": {"type": "Point", "lon": city.lon, "lat": city.lat},
        "address": city.name,
        "city": city.name,
        "state": city.state,
        "country": "India",
        "valid_from": now.isoformat(),
        "valid_until": until.isoformat(),
        "is_public": True,
        "status": "active",
        "created_by": "system",
        "verified": True,
    }


def analyze_weather(weather: Dict[str, Any], city: City, now: datetime) -> List[Dict[str, Any]]:
    """
    Alert documents for one city's current-weather response.

    Parameters
    ----------
    weather : dict
        OpenWeatherMap ``/weather`` response (metric units).
    city : City
    now : datetime
        Fetch time; drives the validity window and the external id.
    """
    documents: List[Dict[str, Any]] = []
    until = now + VALIDITY
    snapshot = _weather_snapshot(weather, now)

    rain_1h = float((weather.get("rain") or {}).get("1h", 0) or 0)
    if rain_1h > FLOOD_RAIN_MM:
        documents.append({
            **_base_document(city, now, until),
            "external_id": external_id_for(city.name, "flood", now),
            "title": f"Flood Warning - {city.name}",
            "description": (
                f"Heavy rainfall ({rain_1h:g}mm/h) detected in {city.name}. Risk of urban "
                f"flooding in low-lying areas. Avoid flooded roads and move to higher "
                f"ground if necessary."
            ),
            "type": "flood",
            "severity": "high" if rain_1h > FLOOD_RAIN_HIGH_MM else "medium",
            "radius_km": FLOOD_RADIUS_KM,
            "weather_data": snapshot,
            "safety_instructions": [
                "Avoid flooded areas: do not walk or drive through floodwaters",
                "Move to higher ground if you are in a low-lying area",
            ],
            "emergency_contacts": [
                {"name": "Emergency Services", "phone": "100", "type": "emergency"},
                {"name": "Disaster Management", "phone": "108", "type": "emergency"},
            ],
            "tags": ["flood", "rain", city.name.lower()],
            "source": "api",
            "confidence": 0.8,
        })

    wind = float(weather.get("wind", {}).get("speed", 0) or 0)
    temp = weather.get("main", {}).get("temp")
    hot = temp is not None and temp > HEAT_C
    cold = temp is not None and temp < COLD_C
    if wind > WIND_MS or hot or cold:
        severity = "medium"
        if wind > WIND_HIGH_MS:
            severity = "high"
            description = (
                f"Severe wind conditions ({wind:g} m/s) in {city.name}. Secure loose "
                f"objects and avoid outdoor activities."
            )
        elif temp is not None and temp > HEAT_HIGH_C:
            severity = "high"
            description = (
                f"Extreme heat ({temp:g}°C) in {city.name}. Risk of heat-related "
                f"illnesses. Stay hydrated and avoid outdoor activities."
            )
        elif temp is not None and temp < COLD_HIGH_C:
            severity = "high"
            description = (
                f"Extreme cold ({temp:g}°C) in {city.name}. Risk of hypothermia. "
                f"Dress warmly and limit outdoor exposure."
            )
        else:
            description = (
                f"Severe weather conditions in {city.name}. Monitor weather updates "
                f"and take necessary precautions."
            )
        documents.append({
            **_base_document(city, now, until),
            "external_id": external_id_for(city.name, "severe_weather", now),
            "title": f"Severe Weather Alert - {city.name}",
            "description": description,
            "type": "severe_weather",
            "severity": severity,
            "radius_km": SEVERE_RADIUS_KM,
            "weather_data": snapshot,
            "safety_instructions": [
                "Stay indoors during severe weather conditions",
                "Monitor weather updates and official advisories",
            ],
            "emergency_contacts": [
                {"name": "Weather Helpline", "phone": "1800-180-1551", "type": "emergency"},
            ],
            "tags": ["severe-weather", city.name.lower()],
            "source": "api",
            "confidence": 0.7,
        })

    return documents


def mock_alerts(now: datetime) -> List[Dict[str, Any]]:
    """Demo alerts used when no API key is configured."""
    until = now + MOCK_VALIDITY
    bucket = hour_bucket(now)
    mumbai = City("Mumbai", 19.0760, 72.8777, "Maharashtra")
    chennai = City("Chennai", 13.0827, 80.2707, "Tamil Nadu")
    return [
        {
            **_base_document(mumbai, now, until),
            "external_id": f"mock_Mumbai_flood_{bucket}",
            "title": "Heavy Rainfall Alert - Mumbai",
            "description": (
                "Heavy rainfall (45mm/h) detected in Mumbai. Risk of urban flooding in "
                "low-lying areas. Avoid flooded roads and move to higher ground if necessary."
            ),
            "type": "flood",
            "severity": "high",
            "radius_km": 25.0,
            "weather_data": {
                "temperature": 26, "humidity": 95, "precipitation": 45,
                "wind_speed": 18, "wind_direction": 180, "pressure": 1008,
                "visibility_km": 2,
            },
            "safety_instructions": [
                "Avoid flooded areas: do not walk or drive through floodwaters",
                "Move to higher ground if you are in a low-lying area",
            ],
            "emergency_contacts": [
                {"name": "Mumbai Police", "phone": "100", "type": "police"},
                {"name": "Municipal Helpline", "phone": "1916", "type": "emergency"},
            ],
            "tags": ["flood", "rain", "mumbai"],
            "source": "mock",
            "confidence": 0.9,
        },
        {
            **_base_document(chennai, now, until),
            "external_id": f"mock_Chennai_severe_weather_{bucket}",
            "title": "Cyclone Warning - Chennai",
            "description": (
                "Cyclonic winds (35 m/s) approaching Chennai. Secure loose objects and "
                "avoid coastal areas. Follow evacuation orders if issued."
            ),
            "type": "severe_weather",
            "severity": "critical",
            "radius_km": 40.0,
            "weather_data": {
                "temperature": 28, "humidity": 92, "precipitation": 0,
                "wind_speed": 35, "wind_direction": 210, "pressure": 995,
                "visibility_km": 5,
            },
            "safety_instructions": [
                "Stay indoors and away from windows during high winds",
                "Secure loose objects and bring in outdoor furniture",
            ],
            "emergency_contacts": [
                {"name": "Cyclone Control Room", "phone": "+91-44-28593900", "type": "emergency"},
            ],
            "tags": ["severe-weather", "cyclone", "chennai"],
            "source": "mock",
            "confidence": 0.95,
        },
    ]


class WeatherAlertSource:
    """
    OpenWeatherMap current-weather source.

    Usage:
        source = WeatherAlertSource(api_key="...")
        documents = await source.fetch()
        await source.close()
    """

    name = "openweathermap"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cities: Optional[List[City]] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
        request_spacing: float = REQUEST_SPACING_SECONDS,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.WEATHER_API_KEY
        self.base_url = (base_url or settings.WEATHER_API_URL).rstrip("/")
        self.timeout = timeout or settings.WEATHER_FETCH_TIMEOUT
        self.cities = cities or MONITORED_CITIES
        self._http_client = client
        self._clock = clock
        self._spacing = request_spacing
        self.last_fetch_time: Optional[datetime] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key) and self.api_key != "your_weather_api_key"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _fetch_city(self, client: httpx.AsyncClient, city: City) -> Dict[str, Any]:
        response = await client.get(
            f"{self.base_url}/weather",
            params={"lat": city.lat, "lon": city.lon, "appid": self.api_key, "units": "metric"},
        )
        response.raise_for_status()
        return response.json()

    async def fetch(self) -> List[Dict[str, Any]]:
        """Alert documents for all monitored cities (mock data without a key)."""
        now = self._clock()
        self.last_fetch_time = now

        if not self.configured:
            logger.info("Weather API key not configured, using mock data")
            return mock_alerts(now)

        client = await self._get_client()
        documents: List[Dict[str, Any]] = []
        for index, city in enumerate(self.cities):
            if index and self._spacing:
                await asyncio.sleep(self._spacing)
            try:
                weather = await self._fetch_city(client, city)
                documents.extend(analyze_weather(weather, city, now))
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "Weather API error for %s: %s", city.name, exc.response.status_code,
                )
            except (httpx.HTTPError, ValueError, TypeError, KeyError) as exc:
                logger.error("Weather fetch failed for %s: %s", city.name, exc)

        logger.info(
            "Weather fetch: %d alert candidates from %d cities",
            len(documents), len(self.cities),
        )
        return documents

    def status(self) -> Dict[str, Any]:
        return {
            "source": self.name,
            "configured": self.configured,
            "api_url": self.base_url,
            "last_fetch_time": self.last_fetch_time.isoformat() if self.last_fetch_time else None,
        }
