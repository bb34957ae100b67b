"""
Route provider gateway -- one directions request per stop pair.

Mapbox Directions v5 and OSRM route v1 share the response contract we use:

  {
    "code":   "Ok",
    "routes": [{
        "geometry": {"type": "LineString", "coordinates": [[lng, lat], ...]},
        "distance": 1234.5,   # meters
        "duration": 321.0     # seconds
    }]
  }

Anything else -- transport error, timeout, non-2xx status, unparsable body,
a code other than "Ok", or an empty route list -- raises RouteUnavailable.
There are no retries here; the caller decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from tripline.api.errors import RouteUnavailable, ValidationError

logger = logging.getLogger(__name__)

_MAPBOX_BASE = "https://api.mapbox.com/directions/v5/mapbox"


@dataclass(frozen=True)
class Coordinate:
    lng: float
    lat: float

    def as_path(self) -> str:
        return f"{self.lng},{self.lat}"


@dataclass(frozen=True)
class RouteResult:
    geometry: list[list[float]]
    distance_meters: float
    duration_seconds: float
    profile: str


def _parse_route(payload: dict[str, Any], profile: str) -> RouteResult:
    """Pull the first route out of a directions response."""
    if not isinstance(payload, dict):
        raise RouteUnavailable("Directions response was not a JSON object.")
    code = payload.get("code")
    if code != "Ok":
        raise RouteUnavailable(f"Directions request failed: {code or 'no code'}", provider_code=code)

    routes = payload.get("routes") or []
    if not routes:
        raise RouteUnavailable("Directions response contained no routes.")

    route = routes[0]
    try:
        coordinates = route["geometry"]["coordinates"]
        distance = float(route["distance"])
        duration = float(route["duration"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RouteUnavailable("Directions response was missing route fields.") from exc

    return RouteResult(
        geometry=[[float(lng), float(lat)] for lng, lat in coordinates],
        distance_meters=distance,
        duration_seconds=duration,
        profile=profile,
    )


class DirectionsGateway:
    """
    Base HTTP client for a directions provider.

    Subclasses supply the URL, query parameters and the set of profiles the
    provider accepts.

    Usage:
        gateway = MapboxDirectionsGateway(access_token="...", timeout_s=10.0)
        route = await gateway.fetch(Coordinate(-121.3, 44.05), Coordinate(-121.2, 44.1))
    """

    name = "directions"
    profiles: frozenset[str] = frozenset({"driving"})

    def __init__(self, timeout_s: float = 10.0) -> None:
        self._timeout_s = timeout_s

    def check_profile(self, profile: str) -> None:
        if profile not in self.profiles:
            raise ValidationError(
                f"Unsupported travel profile {profile!r}.",
                allowed=sorted(self.profiles),
            )

    def _url(self, origin: Coordinate, destination: Coordinate, profile: str) -> str:
        raise NotImplementedError

    def _params(self) -> dict[str, str]:
        return {"geometries": "geojson", "overview": "full"}

    async def fetch(
        self,
        origin: Coordinate,
        destination: Coordinate,
        profile: str = "driving",
    ) -> RouteResult:
        """Request a road-following route between two coordinates."""
        self.check_profile(profile)
        url = self._url(origin, destination, profile)

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                resp = await client.get(url, params=self._params())
                resp.raise_for_status()
                payload = resp.json()
        except httpx.TimeoutException as exc:
            logger.warning("%s timed out after %.1fs", self.name, self._timeout_s)
            raise RouteUnavailable(f"{self.name} request timed out.") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "%s returned %d: %s",
                self.name,
                exc.response.status_code,
                exc.response.text[:200],
            )
            raise RouteUnavailable(
                f"{self.name} returned HTTP {exc.response.status_code}.",
                status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s request failed: %s", self.name, exc)
            raise RouteUnavailable(f"{self.name} request failed.") from exc
        except ValueError as exc:
            raise RouteUnavailable(f"{self.name} returned a non-JSON body.") from exc

        return _parse_route(payload, profile)


class MapboxDirectionsGateway(DirectionsGateway):
    name = "mapbox"
    profiles = frozenset({"driving", "driving-traffic", "walking", "cycling"})

    def __init__(self, access_token: str, timeout_s: float = 10.0, base_url: str = _MAPBOX_BASE) -> None:
        super().__init__(timeout_s)
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")

    def _url(self, origin: Coordinate, destination: Coordinate, profile: str) -> str:
        return f"{self._base_url}/{profile}/{origin.as_path()};{destination.as_path()}"

    def _params(self) -> dict[str, str]:
        return {**super()._params(), "access_token": self._access_token}


class OSRMGateway(DirectionsGateway):
    name = "osrm"
    profiles = frozenset({"driving", "walking", "cycling"})

    def __init__(self, base_url: str, timeout_s: float = 10.0) -> None:
        super().__init__(timeout_s)
        if not base_url:
            raise ValueError("OSRM base URL not set (OSRM_BASE_URL).")
        self._base_url = base_url.rstrip("/")

    def _url(self, origin: Coordinate, destination: Coordinate, profile: str) -> str:
        return f"{self._base_url}/route/v1/{profile}/{origin.as_path()};{destination.as_path()}"


def build_gateway(config) -> DirectionsGateway:
    """Instantiate the provider named by settings.route_provider."""
    if config.route_provider == "osrm":
        return OSRMGateway(config.osrm_base_url, timeout_s=config.route_provider_timeout_s)
    if not config.mapbox_token:
        logger.warning("MAPBOX_TOKEN not set; route generation requests will be rejected by Mapbox")
    return MapboxDirectionsGateway(config.mapbox_token, timeout_s=config.route_provider_timeout_s)
