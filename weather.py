"""
Weather for the barangay dashboard.

`resolve_weather` is the entry point: it tries a live fetch for the
configured location and falls back to tagged sample data on any failure.
The provider call itself lives in `OpenWeatherClient` so the chain can be
driven with any `fetch(lat, lon)` callable.
"""
import logging
from datetime import datetime, date, timedelta, timezone

import requests

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = {
    'city': 'Kabankalan City',
    'latitude': 9.9833,
    'longitude': 122.8167,
    'country': 'PH',
}

SUNNY, CLOUDY, RAINY, SNOW, THUNDERSTORM, MIST = 'sunny', 'cloudy', 'rainy', 'snow', 'thunderstorm', 'mist'

# (first code, last code, condition), inclusive ranges over the provider's code space
CONDITION_TABLE = (
    (200, 299, THUNDERSTORM),
    (300, 399, RAINY),
    (500, 599, RAINY),
    (600, 699, SNOW),
    (700, 799, MIST),
    (800, 800, SUNNY),
    (801, 899, CLOUDY),
)

HEAT_ALERT_C = 35
COLD_ALERT_C = 10
# Provider reports m/s; 30 m/s is the strong-wind line
STRONG_WIND_KMH = 30 * 3.6
FORECAST_DAYS = 3

SAMPLE_DATA_ALERT = ("⚠️ Using sample weather data. To get real weather for {city}, "
                     "an admin needs to add an OpenWeatherMap API key.")

WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def map_condition(code):
    for low, high, condition in CONDITION_TABLE:
        if low <= code <= high:
            return condition
    return SUNNY


def derive_alerts(current, forecast):
    alerts = []
    if current['condition'] == THUNDERSTORM:
        alerts.append("⚡ Thunderstorm warning! Keep indoor activities and protect sensitive plants.")
    if current['temp'] > HEAT_ALERT_C:
        alerts.append("🌡️ High temperature alert! Ensure adequate watering for your crops.")
    if current['temp'] < COLD_ALERT_C:
        alerts.append("❄️ Low temperature alert! Protect frost-sensitive plants.")
    if current['wind_speed'] > STRONG_WIND_KMH:
        alerts.append("💨 Strong wind warning! Secure loose items and provide support for tall plants.")
    if any(day['condition'] == RAINY for day in forecast):
        alerts.append("🌧️ Rain expected in the coming days. Plan your watering schedule accordingly.")
    return alerts


def sample_weather(city=None, country=None):
    city = city or DEFAULT_LOCATION['city']
    return {
        'current': {
            'temp': 28,
            'condition': SUNNY,
            'humidity': 65,
            'wind_speed': 12,
            'description': 'clear sky',
            'feels_like': 30,
        },
        'forecast': [
            {'day': 'Tomorrow', 'temp': 29, 'condition': SUNNY, 'description': 'clear sky'},
            {'day': 'Day 2', 'temp': 27, 'condition': CLOUDY, 'description': 'few clouds'},
            {'day': 'Day 3', 'temp': 26, 'condition': RAINY, 'description': 'light rain'},
        ],
        'alerts': [SAMPLE_DATA_ALERT.format(city=city)],
        'location': {'city': city, 'country': country or DEFAULT_LOCATION['country']},
        'is_sample': True,
    }


def _utc_offset(now, forecast_payload):
    seconds = now.get('timezone')
    if seconds is None:
        seconds = (forecast_payload.get('city') or {}).get('timezone', 0)
    return timedelta(seconds=seconds)


def _local_today(now, forecast_payload):
    """The city's calendar day at observation time, not the server's."""
    if 'dt' not in now:
        return date.today()
    return (datetime.fromtimestamp(now['dt'], tz=timezone.utc) + _utc_offset(now, forecast_payload)).date()


def _daily_forecast(forecast_payload, today):
    offset = timedelta(seconds=(forecast_payload.get('city') or {}).get('timezone', 0))
    days = []
    seen = set()
    for item in forecast_payload['list']:
        local_day = (datetime.fromtimestamp(item['dt'], tz=timezone.utc) + offset).date()
        if local_day <= today or local_day in seen:
            continue
        seen.add(local_day)
        days.append({
            'day': 'Tomorrow' if not days else WEEKDAYS[local_day.weekday()],
            'temp': round(item['main']['temp']),
            'condition': map_condition(item['weather'][0]['id']),
            'description': item['weather'][0]['description'],
        })
        if len(days) == FORECAST_DAYS:
            break
    return days


def normalize_payload(raw, today=None):
    """Turn the provider's {'current': ..., 'forecast': ...} payload into WeatherData."""
    now = raw['current']
    today = today or _local_today(now, raw['forecast'])
    current = {
        'temp': round(now['main']['temp']),
        'condition': map_condition(now['weather'][0]['id']),
        'humidity': now['main']['humidity'],
        'wind_speed': round(now['wind']['speed'] * 3.6),
        'description': now['weather'][0]['description'],
        'feels_like': round(now['main']['feels_like']),
    }
    forecast = _daily_forecast(raw['forecast'], today)
    return {
        'current': current,
        'forecast': forecast,
        'alerts': derive_alerts(current, forecast),
        'location': {'city': now.get('name'), 'country': (now.get('sys') or {}).get('country')},
        'is_sample': False,
    }


def resolve_weather(location, fetch, today=None):
    """
    Resolve the weather for `location` (a LocationSetting dict or None).

    No location: sample data for the default city, no fetch attempted.
    No fetch (provider key absent) or any failure while fetching or
    normalizing: sample data tagged for the configured city. Never raises.
    """
    if not location:
        logger.info("No configured location, serving sample weather for %s", DEFAULT_LOCATION['city'])
        return sample_weather()

    city, country = location.get('city'), location.get('country')
    if fetch is None:
        logger.info("Weather provider key absent, serving sample weather for %s", city)
        return sample_weather(city, country)

    try:
        raw = fetch(location['latitude'], location['longitude'])
        return normalize_payload(raw, today)
    except Exception as e:
        logger.warning("Weather fetch for %s failed, falling back to sample data: %s", city, e)
        return sample_weather(city, country)


class OpenWeatherClient:
    BASE_URL = 'https://api.openweathermap.org/data/2.5'

    def __init__(self, api_key, timeout=10, session=None):
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, endpoint, latitude, longitude):
        params = {
            'lat': latitude,
            'lon': longitude,
            'appid': self.api_key,
            'units': 'metric',
        }
        try:
            response = self.session.get(f"{self.BASE_URL}/{endpoint}", params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailable(f"Weather API error on {endpoint}: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable(f"Weather API returned malformed JSON on {endpoint}") from e

    def fetch_by_coordinates(self, latitude, longitude):
        return {
            'current': self._get('weather', latitude, longitude),
            'forecast': self._get('forecast', latitude, longitude),
        }

    __call__ = fetch_by_coordinates
