"""
Reverse geocoding against a Nominatim-compatible endpoint.

Best effort: any failure yields None and the caller stores the location
without an address.
"""

import logging
from typing import Optional

import httpx

from libs.config import config

logger = logging.getLogger(__name__)


async def reverse_geocode(lat: float, lon: float, timeout: float = 5.0) -> Optional[str]:
    """Return a human-readable address for the coordinates, or None."""
    params = {"format": "jsonv2", "lat": lat, "lon": lon}
    headers = {"User-Agent": config.GEOCODER_USER_AGENT}
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(
                f"{config.GEOCODER_URL}/reverse", params=params, headers=headers
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPError as e:
        logger.warning("Reverse geocoding failed for (%s, %s): %s", lat, lon, e)
        return None
    except ValueError as e:
        logger.warning("Geocoder returned invalid JSON: %s", e)
        return None

    address = (data or {}).get("display_name")
    return address or None
