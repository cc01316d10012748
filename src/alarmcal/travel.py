from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

import requests

from .config import TravelConfig

logger = logging.getLogger(__name__)

TravelResult = Tuple[Optional[timedelta], Optional[str]]

# (origin_lat, origin_lng, destination address) -> (duration, error); must not raise.
TravelEstimator = Callable[[float, float, str], TravelResult]

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
OSRM_ROUTE_URL = "https://router.project-osrm.org/route/v1/driving/"


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class GoogleRoutesEstimator:
    """Driving time from a coordinate to a free-text address via the Google Routes API.

    Blocks for up to ``timeout`` seconds per call.
    """

    def __init__(self, api_key: str, session: Optional[requests.Session] = None, timeout: float = 10) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._timeout = timeout

    def __call__(self, origin_lat: float, origin_lng: float, destination: str) -> TravelResult:
        body = {
            "origin": {"location": {"latLng": {"latitude": origin_lat, "longitude": origin_lng}}},
            "destination": {"address": destination},
            "travelMode": "DRIVE",
        }
        headers = {
            "X-Goog-Api-Key": self._api_key,
            "X-Goog-FieldMask": "routes.duration",
            "Content-Type": "application/json",
        }
        logger.debug("Requesting route: (%s, %s) -> %r", origin_lat, origin_lng, destination)
        try:
            resp = self._session.post(ROUTES_URL, json=body, headers=headers, timeout=self._timeout)
            if not resp.ok:
                msg = f"HTTP {resp.status_code}: {resp.text[:200]}"
                logger.warning("Routes API error: %s", msg)
                return None, msg
            if not resp.content:
                return None, "Empty response body"

            routes = resp.json().get("routes") or []
            if not routes:
                logger.warning("No routes returned")
                return None, "No routes returned"

            raw = routes[0].get("duration")
            if not raw:
                return None, "No duration in route response"
            try:
                seconds = int(str(raw).removesuffix("s"))
            except ValueError:
                return None, f"Unparseable duration: {raw}"

            duration = timedelta(seconds=seconds)
            logger.debug("Route OK: %d min", duration // timedelta(minutes=1))
            return duration, None
        except Exception as exc:
            msg = _describe(exc)
            logger.warning("Routes API exception: %s", msg)
            return None, msg


class OsrmEstimator:
    """Keyless estimator: Nominatim geocoding plus the public OSRM router, with in-memory caching."""

    def __init__(
        self,
        user_agent: str = "alarmcal/1.0",
        session: Optional[requests.Session] = None,
        timeout: float = 8,
    ) -> None:
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        self._timeout = timeout
        self._geocode_cache: Dict[str, Optional[Tuple[float, float]]] = {}
        self._duration_cache: Dict[Tuple[float, float, str], TravelResult] = {}

    def __call__(self, origin_lat: float, origin_lng: float, destination: str) -> TravelResult:
        destination_norm = _normalize(destination)
        if not destination_norm:
            return None, "Empty destination"

        cache_key = (round(origin_lat, 4), round(origin_lng, 4), destination_norm)
        if cache_key in self._duration_cache:
            return self._duration_cache[cache_key]

        try:
            dest = self._geocode(destination_norm)
            if dest is None:
                return None, f"Could not geocode {destination!r}"

            (dest_lat, dest_lon) = dest
            resp = self._session.get(
                f"{OSRM_ROUTE_URL}{origin_lng},{origin_lat};{dest_lon},{dest_lat}",
                params={"overview": "false"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            routes = resp.json().get("routes") or []
            if not routes:
                result: TravelResult = (None, "No routes returned")
            else:
                seconds = float(routes[0].get("duration", 0))
                result = (timedelta(seconds=round(seconds)), None)
        except Exception as exc:
            msg = _describe(exc)
            logger.warning("OSRM lookup failed: %s", msg)
            return None, msg

        self._duration_cache[cache_key] = result
        return result

    def _geocode(self, address: str) -> Optional[Tuple[float, float]]:
        if address in self._geocode_cache:
            return self._geocode_cache[address]
        resp = self._session.get(
            NOMINATIM_URL,
            params={"q": address, "format": "json", "limit": 1},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        results = resp.json()
        value = None
        if results:
            item = results[0]
            value = (float(item["lat"]), float(item["lon"]))
        self._geocode_cache[address] = value
        return value


def build_estimator(travel: TravelConfig, api_key: str = "") -> Optional[TravelEstimator]:
    if travel.provider == "google":
        if not api_key:
            logger.warning("travel.provider is google but GOOGLE_ROUTES_API_KEY is not set; travel disabled")
            return None
        return GoogleRoutesEstimator(api_key, timeout=travel.timeout_seconds)
    if travel.provider == "osrm":
        return OsrmEstimator(timeout=travel.timeout_seconds)
    return None


def _normalize(value: str) -> str:
    return " ".join(value.strip().lower().split())
