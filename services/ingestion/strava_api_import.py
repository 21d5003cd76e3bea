from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from packages.config import STRAVA_API_BASE
from packages.logging_utils import log_event
from packages.metrics import inc

from .errors import UpstreamError, UpstreamUnavailable, classify_http_status
from .upstream_http import HTTPStatusError, http_json as default_http_json


logger = logging.getLogger("runsync.strava")

DEFAULT_ACTIVITY_TYPES = ("Run", "TrailRun")


def parse_iso_to_epoch(value: str | None) -> int | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _latlng(value) -> Optional[tuple[float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return None
    try:
        lat = float(value[0])
        lng = float(value[1])
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def _num(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RawActivity:
    source_id: str
    name: Optional[str]
    activity_type: Optional[str]
    sport_type: Optional[str]
    start_date: str
    start_date_local: Optional[str] = None
    timezone: Optional[str] = None
    distance_m: Optional[float] = None
    moving_time_s: Optional[int] = None
    elapsed_time_s: Optional[int] = None
    start_latlng: Optional[tuple[float, float]] = None
    end_latlng: Optional[tuple[float, float]] = None
    average_speed: Optional[float] = None
    max_speed: Optional[float] = None
    average_heartrate: Optional[float] = None
    max_heartrate: Optional[float] = None
    total_elevation_gain: Optional[float] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: dict) -> "RawActivity":
        if payload.get("id") is None or not payload.get("start_date"):
            raise ValueError("activity payload missing id or start_date")
        moving = _num(payload.get("moving_time"))
        elapsed = _num(payload.get("elapsed_time"))
        return cls(
            source_id=str(payload["id"]),
            name=payload.get("name"),
            activity_type=payload.get("type"),
            sport_type=payload.get("sport_type"),
            start_date=payload["start_date"],
            start_date_local=payload.get("start_date_local"),
            timezone=payload.get("timezone"),
            distance_m=_num(payload.get("distance")),
            moving_time_s=int(moving) if moving is not None else None,
            elapsed_time_s=int(elapsed) if elapsed is not None else None,
            start_latlng=_latlng(payload.get("start_latlng")),
            end_latlng=_latlng(payload.get("end_latlng")),
            average_speed=_num(payload.get("average_speed")),
            max_speed=_num(payload.get("max_speed")),
            average_heartrate=_num(payload.get("average_heartrate")),
            max_heartrate=_num(payload.get("max_heartrate")),
            total_elevation_gain=_num(payload.get("total_elevation_gain")),
            raw=payload,
        )

    @property
    def has_start_coordinates(self) -> bool:
        return self.start_latlng is not None

    @property
    def start_epoch(self) -> Optional[int]:
        return parse_iso_to_epoch(self.start_date)

    def is_runnable(self, activity_types: Iterable[str]) -> bool:
        types = set(activity_types)
        return self.activity_type in types or self.sport_type in types


@dataclass
class FetchedPage:
    items: list[RawActivity]
    raw_count: int
    per_page: int

    @property
    def is_last_page(self) -> bool:
        # The unfiltered count decides termination; a page of non-runs is still full.
        return self.raw_count < self.per_page


class ActivityFetcher:
    def __init__(
        self,
        http_json: Callable = default_http_json,
        base_url: str = STRAVA_API_BASE,
        activity_types: Iterable[str] = DEFAULT_ACTIVITY_TYPES,
        timeout: float = 30,
    ):
        self._http_json = http_json
        self._base_url = base_url.rstrip("/")
        self._activity_types = tuple(activity_types)
        self._timeout = timeout

    def fetch_page(self, access_token: str, cursor) -> FetchedPage:
        params = cursor.to_params()
        try:
            payload = self._http_json(
                f"{self._base_url}/athlete/activities",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                timeout=self._timeout,
            )
        except HTTPStatusError as exc:
            inc(f"strava_http_errors_total{{status=\"{exc.status}\"}}")
            raise classify_http_status(exc.status, "Strava activities request failed.", "fetching") from None
        except OSError as exc:
            raise UpstreamUnavailable(
                f"Strava unreachable: {type(exc).__name__}", stage="fetching"
            ) from None
        except ValueError:
            raise UpstreamError("Strava returned malformed JSON.", stage="fetching") from None

        if not isinstance(payload, list):
            raise UpstreamError("Strava returned an unexpected payload shape.", stage="fetching")

        items: list[RawActivity] = []
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            try:
                activity = RawActivity.from_api(entry)
            except ValueError:
                logger.warning("Skipping malformed activity payload id=%s", entry.get("id"))
                continue
            if not activity.is_runnable(self._activity_types):
                continue
            if not activity.has_start_coordinates:
                continue
            items.append(activity)

        page = FetchedPage(items=items, raw_count=len(payload), per_page=cursor.per_page)
        log_event(
            logger,
            "page_fetched",
            page=cursor.page,
            raw_count=page.raw_count,
            qualifying=len(items),
            last_page=page.is_last_page,
        )
        return page
