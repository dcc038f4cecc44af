import html
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests
from timezonefinder import TimezoneFinder

WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
FORECAST_URL = "https://api.openweathermap.org/data/2.5/forecast"
GEO_DIRECT_URL = "https://api.openweathermap.org/geo/1.0/direct"
GEO_REVERSE_URL = "https://api.openweathermap.org/geo/1.0/reverse"

COORDS_RE = re.compile(r"^\s*(-?\d{1,2}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)\s*$")

DIGEST_HEADER = "🔔 <b>Your daily weather digest</b>"
EVENING_SLOTS = 4
FORECAST_DAYS = 5

_tf: Optional[TimezoneFinder] = None


class WeatherServiceError(RuntimeError):
    pass


@dataclass
class ResolvedLocation:
    name: str
    country: str
    lat: float
    lon: float
    time_zone: Optional[str]

    @property
    def ref(self) -> str:
        return f"{self.name},{self.country}" if self.country else self.name


def _api_key() -> str:
    api_key = os.getenv("OPENWEATHER_API_KEY")
    if not api_key:
        raise RuntimeError("OPENWEATHER_API_KEY is not set")
    return api_key


def _get(url: str, params: dict, timeout: int = 15):
    params = {**params, "appid": _api_key()}

    try:
        resp = requests.get(url, params=params, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        if status == 404:
            raise WeatherServiceError(f"Location not found: {params.get('q') or 'coordinates'}") from e
        raise WeatherServiceError(f"OpenWeather request failed: {e}") from e
    except requests.RequestException as e:
        raise WeatherServiceError(f"OpenWeather request failed: {e}") from e
    except ValueError as e:
        raise WeatherServiceError("OpenWeather returned invalid JSON.") from e


def location_params(location_ref: str) -> dict:
    ref = (location_ref or "").strip()
    if not ref:
        raise WeatherServiceError("Empty location")

    m = COORDS_RE.match(ref)
    if m:
        lat, lon = float(m.group(1)), float(m.group(2))
        if -90 <= lat <= 90 and -180 <= lon <= 180:
            return {"lat": lat, "lon": lon}
    return {"q": ref}


def _query(location_ref: str) -> dict:
    return {
        **location_params(location_ref),
        "units": "metric",
        "lang": os.getenv("WEATHER_LANG", "en"),
    }


def fetch_current(location_ref: str) -> dict:
    return _get(WEATHER_URL, _query(location_ref))


def fetch_forecast(location_ref: str) -> dict:
    return _get(FORECAST_URL, _query(location_ref))


def timezone_for(lat: float, lon: float) -> Optional[str]:
    global _tf
    if _tf is None:
        _tf = TimezoneFinder()
    return _tf.timezone_at(lat=float(lat), lng=float(lon))


def resolve_location(query: str) -> ResolvedLocation:
    """Geocode a city name and attach the IANA zone it sits in."""
    query = (query or "").strip()
    if not query:
        raise WeatherServiceError("Empty location")

    results = _get(GEO_DIRECT_URL, {"q": query, "limit": 1})
    if not results:
        raise WeatherServiceError(f"Location not found: {query}")

    place = results[0]
    lat, lon = place.get("lat"), place.get("lon")
    if lat is None or lon is None:
        raise WeatherServiceError(f"Geocoding failed for {query}: lat/lon missing")

    return ResolvedLocation(
        name=place.get("name") or query,
        country=place.get("country") or "",
        lat=float(lat),
        lon=float(lon),
        time_zone=timezone_for(lat, lon),
    )


def city_from_coords(lat: float, lon: float) -> str:
    results = _get(GEO_REVERSE_URL, {"lat": lat, "lon": lon, "limit": 1})
    if not results or not results[0].get("name"):
        raise WeatherServiceError(f"No city found at {lat},{lon}")
    return results[0]["name"]


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:] if text else ""


def _local_time(dt_raw, tz_offset_sec: int) -> datetime:
    t_utc = datetime.fromtimestamp(int(dt_raw), tz=timezone.utc)
    return t_utc + timedelta(seconds=tz_offset_sec)


def build_current_report(data: dict) -> str:
    name = html.escape(data["name"])
    country = html.escape(data.get("sys", {}).get("country", ""))
    description = html.escape(_capitalize(data["weather"][0]["description"]))
    temp = int(round(data["main"]["temp"]))
    feels_like = int(round(data["main"]["feels_like"]))
    wind = float(data.get("wind", {}).get("speed", 0))

    place = f"{name}, {country}" if country else name
    return (
        f"Weather in <b>{place}</b>:\n"
        f"{description}, temperature <b>{temp}°C</b> (feels like <b>{feels_like}°C</b>)\n"
        f"Wind speed: {wind:.1f} m/s"
    )


def build_evening_forecast(data: dict) -> str:
    city = data.get("city", {})
    tz_offset_sec = int(city.get("timezone", 0))
    lines = [f"<b>Forecast until evening for {html.escape(city.get('name', ''))}</b>:"]

    for entry in data.get("list", [])[:EVENING_SLOTS]:
        t_local = _local_time(entry["dt"], tz_offset_sec)
        temp = int(round(entry["main"]["temp"]))
        description = html.escape(entry["weather"][0]["description"])
        lines.append(f"<b>- {t_local:%H:%M}:</b> {temp}°C, {description}")

    return "\n".join(lines)


def build_five_day_forecast(data: dict) -> str:
    city = data.get("city", {})
    tz_offset_sec = int(city.get("timezone", 0))

    days: Dict[object, List[dict]] = {}
    for entry in data.get("list", []):
        day = _local_time(entry["dt"], tz_offset_sec).date()
        days.setdefault(day, []).append(entry)

    lines = [f"<b>5-day forecast for {html.escape(city.get('name', ''))}</b>:"]
    for day, entries in list(days.items())[:FORECAST_DAYS]:
        day_temp = int(round(max(e["main"]["temp_max"] for e in entries)))
        night_temp = int(round(min(e["main"]["temp_min"] for e in entries)))
        description = html.escape(entries[0]["weather"][0]["description"])
        lines.append(f"<b>- {day:%d.%m} ({day:%A}):</b>")
        lines.append(f"  Day: <b>{day_temp}°C</b>, night: <b>{night_temp}°C</b>, {description}")

    return "\n".join(lines)


def _render(builder, data: dict) -> str:
    try:
        return builder(data)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise WeatherServiceError(f"Unexpected OpenWeather payload: {e!r}") from e


def current_report(location_ref: str) -> str:
    return _render(build_current_report, fetch_current(location_ref))


def evening_forecast(location_ref: str) -> str:
    return _render(build_evening_forecast, fetch_forecast(location_ref))


def five_day_forecast(location_ref: str) -> str:
    return _render(build_five_day_forecast, fetch_forecast(location_ref))


class WeatherContentProvider:
    """Builds the daily digest text for a location."""

    def fetch_content(self, location_ref: str) -> str:
        return "\n\n".join(
            [
                DIGEST_HEADER,
                current_report(location_ref),
                evening_forecast(location_ref),
            ]
        )
