from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from packages.config import OPENWEATHER_API_BASE
from packages.metrics import inc

from .errors import EnrichmentFailure
from .strava_api_import import RawActivity
from .upstream_http import HTTPStatusError, http_json as default_http_json


logger = logging.getLogger("runsync.enrichment")


@dataclass(frozen=True)
class WeatherSnapshot:
    temperature_c: Optional[float] = None
    feels_like_c: Optional[float] = None
    humidity: Optional[float] = None
    pressure_hpa: Optional[float] = None
    wind_speed_ms: Optional[float] = None
    wind_deg: Optional[float] = None
    weather_code: Optional[int] = None
    condition: Optional[str] = None


@dataclass(frozen=True)
class Location:
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class EnrichedActivity:
    activity: RawActivity
    weather: Optional[WeatherSnapshot] = None
    location: Optional[Location] = None

    @property
    def source_id(self) -> str:
        return self.activity.source_id

    @property
    def is_enriched(self) -> bool:
        return self.weather is not None or self.location is not None

    def to_row(self) -> dict:
        act = self.activity
        weather = self.weather or WeatherSnapshot()
        location = self.location or Location()
        start = act.start_latlng or (None, None)
        end = act.end_latlng or (None, None)
        return {
            "strava_id": act.source_id,
            "name": act.name,
            "sport_type": act.sport_type or act.activity_type,
            "distance_m": act.distance_m,
            "moving_time_s": act.moving_time_s,
            "elapsed_time_s": act.elapsed_time_s,
            "start_date": act.start_date,
            "start_date_local": act.start_date_local,
            "timezone": act.timezone,
            "start_lat": start[0],
            "start_lng": start[1],
            "end_lat": end[0],
            "end_lng": end[1],
            "average_speed": act.average_speed,
            "max_speed": act.max_speed,
            "average_heartrate": act.average_heartrate,
            "max_heartrate": act.max_heartrate,
            "total_elevation_gain": act.total_elevation_gain,
            "temperature_c": weather.temperature_c,
            "feels_like_c": weather.feels_like_c,
            "humidity": weather.humidity,
            "pressure_hpa": weather.pressure_hpa,
            "wind_speed_ms": weather.wind_speed_ms,
            "wind_deg": weather.wind_deg,
            "weather_code": weather.weather_code,
            "weather_condition": weather.condition,
            "city": location.city,
            "state": location.state,
            "country": location.country,
        }


def _geo_key(lat: float, lon: float) -> tuple[float, float]:
    # ~100 m buckets
    return round(lat, 3), round(lon, 3)


class LookupBreaker:
    """Stops calling a provider after repeated failures.

    After ``threshold`` consecutive failures lookups are skipped until
    ``cooldown_sec`` has passed. The next lookup then calls the provider
    again and a single failure reopens the breaker.
    """

    def __init__(
        self,
        kind: str,
        threshold: int = 5,
        cooldown_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kind = kind
        self._threshold = max(1, threshold)
        self._cooldown_sec = cooldown_sec
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self.cooldown_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self.cooldown_until is not None and self._clock() < self.cooldown_until

    def allow(self) -> bool:
        with self._lock:
            if self.cooldown_until is None:
                return True
            if self._clock() < self.cooldown_until:
                return False
            # half-open
            self.cooldown_until = None
            self.consecutive_failures = self._threshold - 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self.cooldown_until = None

    def record_failure(self) -> None:
        with self._lock:
            self.consecutive_failures += 1
            if self.cooldown_until is not None or self.consecutive_failures < self._threshold:
                return
            self.cooldown_until = self._clock() + self._cooldown_sec
            failures = self.consecutive_failures
        inc(f"enrichment_breaker_open_total{{kind=\"{self.kind}\"}}")
        logger.warning(
            "%s lookups paused for %.0fs after %s consecutive failures",
            self.kind,
            self._cooldown_sec,
            failures,
        )


class EnrichmentStage:
    """Best-effort weather and place lookups against OpenWeatherMap.

    Each lookup is isolated: a failure nulls that field and is logged, it is
    never retried and never raised to the caller. Weather and geocode lookups
    each sit behind a :class:`LookupBreaker`, so a provider outage costs a
    handful of calls rather than two per activity.
    """

    def __init__(
        self,
        api_key: Optional[str],
        http_json: Callable = default_http_json,
        base_url: str = OPENWEATHER_API_BASE,
        max_workers: int = 4,
        timeout: float = 30,
        breaker_threshold: int = 5,
        breaker_cooldown_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api_key = api_key
        self._http_json = http_json
        self._base_url = base_url.rstrip("/")
        self._max_workers = max(1, max_workers)
        self._timeout = timeout
        self._geo_cache: dict[tuple[float, float], Location] = {}
        self._geo_lock = threading.Lock()
        self.breakers = {
            kind: LookupBreaker(kind, breaker_threshold, breaker_cooldown_sec, clock)
            for kind in ("weather", "geocode")
        }

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def enrich(self, activity: RawActivity) -> EnrichedActivity:
        if not self.enabled or not activity.has_start_coordinates:
            return EnrichedActivity(activity)
        lat, lon = activity.start_latlng
        weather = self._guarded("weather", activity, lambda: self._fetch_weather(lat, lon, activity.start_epoch))
        location = self._guarded("geocode", activity, lambda: self._reverse_geocode(lat, lon))
        return EnrichedActivity(activity, weather=weather, location=location)

    def enrich_many(self, activities: list[RawActivity]) -> list[EnrichedActivity]:
        if not activities:
            return []
        if not self.enabled:
            return [EnrichedActivity(activity) for activity in activities]
        workers = min(self._max_workers, len(activities))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="enrich") as pool:
            return list(pool.map(self.enrich, activities))

    def _guarded(self, kind: str, activity: RawActivity, lookup: Callable):
        breaker = self.breakers[kind]
        if not breaker.allow():
            inc(f"enrichment_skipped_total{{kind=\"{kind}\"}}")
            return None
        try:
            result = lookup()
        except Exception as exc:  # any lookup failure only nulls the field
            breaker.record_failure()
            inc(f"enrichment_failures_total{{kind=\"{kind}\"}}")
            reason = exc.message if isinstance(exc, EnrichmentFailure) else type(exc).__name__
            logger.warning("%s lookup failed activity_id=%s reason=%s", kind, activity.source_id, reason)
            return None
        breaker.record_success()
        return result

    def _get(self, path: str, params: dict):
        query = dict(params)
        query["appid"] = self._api_key
        try:
            return self._http_json(f"{self._base_url}{path}", params=query, timeout=self._timeout)
        except HTTPStatusError as exc:
            raise EnrichmentFailure(f"HTTP {exc.status}", stage="enriching", status=exc.status) from None

    def _fetch_weather(self, lat: float, lon: float, start_epoch: Optional[int]) -> Optional[WeatherSnapshot]:
        if start_epoch is None:
            raise EnrichmentFailure("activity has no parseable start time", stage="enriching")
        payload = self._get(
            "/data/3.0/onecall/timemachine",
            {"lat": lat, "lon": lon, "dt": start_epoch, "units": "metric"},
        )
        if not isinstance(payload, dict):
            raise EnrichmentFailure("malformed weather payload", stage="enriching")
        data = payload.get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise EnrichmentFailure("weather payload has no data", stage="enriching")
        point = data[0]
        conditions = point.get("weather") or [{}]
        condition = conditions[0] if isinstance(conditions, list) and conditions else {}
        code = condition.get("id")
        return WeatherSnapshot(
            temperature_c=point.get("temp"),
            feels_like_c=point.get("feels_like"),
            humidity=point.get("humidity"),
            pressure_hpa=point.get("pressure"),
            wind_speed_ms=point.get("wind_speed"),
            wind_deg=point.get("wind_deg"),
            weather_code=int(code) if code is not None else None,
            condition=condition.get("main"),
        )

    def _reverse_geocode(self, lat: float, lon: float) -> Optional[Location]:
        key = _geo_key(lat, lon)
        with self._geo_lock:
            cached = self._geo_cache.get(key)
        if cached is not None:
            inc("geocode_cache_hits_total")
            return cached
        payload = self._get("/geo/1.0/reverse", {"lat": lat, "lon": lon, "limit": 1})
        if not isinstance(payload, list):
            raise EnrichmentFailure("malformed geocode payload", stage="enriching")
        if not payload:
            return None
        place = payload[0]
        if not isinstance(place, dict):
            raise EnrichmentFailure("malformed geocode payload", stage="enriching")
        location = Location(city=place.get("name"), state=place.get("state"), country=place.get("country"))
        with self._geo_lock:
            self._geo_cache[key] = location
        return location
