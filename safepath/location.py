"""Location lookups backed by the Google Maps web services.

Every lookup degrades instead of raising: reverse geocoding falls back
to the raw coordinates, nearby search to an empty list and directions
to ``None``.
"""

import logging
from functools import lru_cache
from math import atan2, cos, radians, sin, sqrt

import httpx
from fastapi import APIRouter, Depends, Query

from . import schemas
from .auth import get_current_user
from .core import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/location", tags=["location"])

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NEARBY_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points
    on the Earth surface in kilometers.
    """
    R = 6371  # Earth radius in km
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return R * c


class LocationService:
    """Thin async client over the Geocoding, Places and Directions APIs."""

    def __init__(
        self,
        api_key: str | None,
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def _get_json(self, url: str, params: dict) -> dict:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.get(url, params={**params, "key": self.api_key})
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        return data

    async def reverse_geocode(self, latitude: float, longitude: float) -> str:
        """
        Resolve coordinates to a formatted street address.

        Args:
            latitude (float): Latitude in degrees.
            longitude (float): Longitude in degrees.

        Returns:
            str: The first formatted address, or ``"<lat>, <lon>"`` when
            the lookup is unavailable or fails.
        """
        fallback = f"{latitude}, {longitude}"
        if not self.api_key:
            return fallback
        try:
            data = await self._get_json(GEOCODE_URL, {"latlng": f"{latitude},{longitude}"})
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Geocoding error: %s", exc)
            return fallback

        results = data.get("results") or []
        if data.get("status") == "OK" and results:
            return results[0].get("formatted_address") or fallback
        logger.info("Geocoding returned status %s", data.get("status"))
        return fallback

    async def nearby_services(
        self, latitude: float, longitude: float, place_type: str = "hospital"
    ) -> list[dict]:
        """
        Find emergency services within 5 km, closest first.

        Returns:
            list[dict]: Places with name, address, location, rating,
            opening state, place id and distance.
        """
        if not self.api_key:
            return []
        try:
            data = await self._get_json(
                NEARBY_URL,
                {
                    "location": f"{latitude},{longitude}",
                    "radius": 5000,
                    "type": place_type,
                },
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Nearby places search error: %s", exc)
            return []
        if data.get("status") != "OK":
            return []

        places = []
        for place in data.get("results", []):
            point = place.get("geometry", {}).get("location", {})
            if "lat" not in point or "lng" not in point:
                continue
            places.append(
                {
                    "name": place.get("name", ""),
                    "address": place.get("vicinity"),
                    "location": {"latitude": point["lat"], "longitude": point["lng"]},
                    "rating": place.get("rating"),
                    "is_open": (place.get("opening_hours") or {}).get("open_now"),
                    "place_id": place.get("place_id"),
                    "distance_km": round(
                        distance_km(latitude, longitude, point["lat"], point["lng"]), 3
                    ),
                }
            )
        return sorted(places, key=lambda item: item["distance_km"])

    async def directions(
        self, origin: tuple[float, float], destination: tuple[float, float]
    ) -> dict | None:
        """
        Fetch the first route between two points.

        Returns:
            dict | None: Distance, duration, steps and overview polyline
            of the first leg, or ``None`` when no route is available.
        """
        if not self.api_key:
            return None
        try:
            data = await self._get_json(
                DIRECTIONS_URL,
                {
                    "origin": f"{origin[0]},{origin[1]}",
                    "destination": f"{destination[0]},{destination[1]}",
                },
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Directions error: %s", exc)
            return None
        routes = data.get("routes") or []
        if data.get("status") != "OK" or not routes or not routes[0].get("legs"):
            return None
        route = routes[0]
        leg = route["legs"][0]
        return {
            "distance": leg.get("distance"),
            "duration": leg.get("duration"),
            "steps": leg.get("steps", []),
            "polyline": (route.get("overview_polyline") or {}).get("points"),
        }


@lru_cache()
def get_location_service() -> LocationService:
    settings = get_settings()
    return LocationService(settings.GOOGLE_MAPS_API_KEY, settings.HTTP_TIMEOUT_SECONDS)


@router.get("/nearby", response_model=schemas.NearbyResponse)
async def nearby_services(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    type: str = Query("hospital", pattern="^[a-z_]+$"),
    current_user=Depends(get_current_user),
    locator: LocationService = Depends(get_location_service),
):
    """
    List emergency services (hospitals, police, fire stations) near a point.

    Args:
        latitude (float): Latitude of the search center.
        longitude (float): Longitude of the search center.
        type (str): Google Places type, ``hospital`` by default.

    Returns:
        NearbyResponse: Matching places, closest first.
    """
    places = await locator.nearby_services(latitude, longitude, type)
    return {"success": True, "places": places}


@router.get("/directions", response_model=schemas.DirectionsResponse)
async def directions(
    origin_latitude: float = Query(..., ge=-90, le=90),
    origin_longitude: float = Query(..., ge=-180, le=180),
    destination_latitude: float = Query(..., ge=-90, le=90),
    destination_longitude: float = Query(..., ge=-180, le=180),
    current_user=Depends(get_current_user),
    locator: LocationService = Depends(get_location_service),
):
    """Route from the caller's position to a destination, if one exists."""
    route = await locator.directions(
        (origin_latitude, origin_longitude),
        (destination_latitude, destination_longitude),
    )
    return {"success": route is not None, "route": route}
