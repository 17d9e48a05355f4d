"""Reverse geocoding — GPS coordinates to a human-readable pickup sector.

Learn: Google returns several candidate addresses for one point, from
very precise ("12-34 Main St") to very broad ("Quito"). We score each
candidate by the address components it carries and keep the best one
that has at least some street-level information:

    street_number 10, route 8, neighborhood 6, sublocality_level_1 5,
    sublocality 4, locality 3, admin_area_3 2, admin_area_2 1
    +25 if the formatted address carries a landmark reference
    +5  if it names an intersection

The result is formatted as "Street, Neighborhood, Sector". Any failure
(no key, timeout, bad status, malformed body) degrades to FALLBACK_SECTOR; geocoding
never blocks a ride request.
"""

import math
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
FALLBACK_SECTOR = "GPS location"

COMPONENT_SCORES = {
    "street_number": 10,
    "route": 8,
    "neighborhood": 6,
    "sublocality_level_1": 5,
    "sublocality": 4,
    "locality": 3,
    "administrative_area_level_3": 2,
    "administrative_area_level_2": 1,
}
REFERENCE_MARKERS = (
    "metros", "referencia", "frente a", "cerca de",
    "al Sur de", "al Norte de", "al Este de", "al Oeste de",
)
INTERSECTION_MARKERS = (" y ", " & ", " con ")
STRIP_SUFFIXES = (", Ecuador", ", Colombia")


class GeocodingError(Exception):
    pass


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def _has_reference(address: str) -> bool:
    return any(marker in address for marker in REFERENCE_MARKERS)


def score_result(result: dict) -> tuple[int, bool]:
    """Return (score, has_street_info) for one geocoding candidate."""
    score = 0
    types_seen: set[str] = set()
    for component in result.get("address_components") or []:
        for kind in component.get("types", []):
            if kind in COMPONENT_SCORES:
                score += COMPONENT_SCORES[kind]
                types_seen.add(kind)

    address = result.get("formatted_address") or ""
    if _has_reference(address):
        score += 25
    if any(marker in address for marker in INTERSECTION_MARKERS):
        score += 5

    has_street_info = bool(
        types_seen & {"street_number", "route", "neighborhood"}
    ) or "metros" in address
    return score, has_street_info


def pick_best_result(results: list[dict]) -> Optional[dict]:
    best, best_score = None, -1
    for result in results:
        if not result.get("address_components"):
            continue
        score, has_street_info = score_result(result)
        if has_street_info and score > best_score:
            best, best_score = result, score
    if best is None and results:
        best = results[0]
    return best


def format_result(result: dict) -> str:
    """Format one candidate as "Street, Neighborhood, Sector"."""
    address = result.get("formatted_address") or ""
    if _has_reference(address):
        for suffix in STRIP_SUFFIXES:
            address = address.replace(suffix, "")
        return address

    found: dict[str, str] = {}
    for component in result.get("address_components") or []:
        for kind in component.get("types", []):
            if kind in COMPONENT_SCORES and kind not in found:
                found[kind] = component.get("long_name", "")
                break

    street = f"{found.get('street_number', '')} {found.get('route', '')}".strip()
    neighborhood = (
        found.get("neighborhood")
        or found.get("administrative_area_level_3")
        or found.get("sublocality_level_1")
        or found.get("sublocality")
        or ""
    )
    sector = found.get("locality") or found.get("administrative_area_level_2") or ""

    parts = [p for p in (street, neighborhood, sector) if p]
    return ", ".join(parts) if parts else FALLBACK_SECTOR


class Geocoder:
    """Google Maps reverse geocoding over httpx."""

    def __init__(
        self,
        api_key: str,
        *,
        language: str = "es",
        region: str = "ec",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.language = language
        self.region = region
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def reverse(self, latitude: float, longitude: float) -> str:
        """Resolve coordinates to a display string.

        Raises:
            GeocodingError: invalid coordinates, HTTP failure, non-OK status
                or a body that is not the expected JSON shape
        """
        if not is_valid_coordinate(latitude, longitude):
            raise GeocodingError(f"Invalid coordinates ({latitude}, {longitude})")
        if not self.api_key:
            raise GeocodingError("Geocoding API key is not configured")

        try:
            resp = await self._client.get(
                GOOGLE_GEOCODE_URL,
                params={
                    "latlng": f"{latitude},{longitude}",
                    "key": self.api_key,
                    "language": self.language,
                    "region": self.region,
                },
            )
        except httpx.TimeoutException as e:
            raise GeocodingError("Geocoding request timed out") from e
        except httpx.HTTPError as e:
            raise GeocodingError(f"Geocoding request failed: {e}") from e

        if resp.status_code != 200:
            raise GeocodingError(f"Geocoding API returned {resp.status_code}")
        try:
            data = resp.json()
            status = data.get("status")
            if status != "OK":
                raise GeocodingError(f"Geocoding status {status}")
            best = pick_best_result(data.get("results") or [])
            return format_result(best) if best else FALLBACK_SECTOR
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise GeocodingError(f"Malformed geocoding response: {e}") from e

    async def sector_for(self, latitude: float, longitude: float) -> str:
        """Like reverse(), but never raises: failures yield FALLBACK_SECTOR."""
        try:
            sector = await self.reverse(latitude, longitude)
        except GeocodingError as e:
            logger.warning("geocoding.failed", error=str(e))
            return FALLBACK_SECTOR
        logger.debug("geocoding.resolved", sector=sector)
        return sector

    async def close(self) -> None:
        await self._client.aclose()
