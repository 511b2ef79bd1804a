import logging
import math
from typing import List, Optional

import requests

import config

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def format_address(address: Optional[dict]) -> str:
    if not address:
        return ""
    parts = [address.get(k) for k in ("street", "city", "state", "zipCode", "country")]
    return ", ".join(p for p in parts if p)


def geocode_address(address: Optional[dict]) -> Optional[List[float]]:
    """Look up [longitude, latitude] for a postal address via the Google Geocoding API.

    Returns None when no API key is configured, the address is empty, or the
    lookup fails. Nothing is retried.
    """
    query = format_address(address)
    if not query or not config.GOOGLE_MAPS_API_KEY:
        return None
    try:
        res = requests.get(
            config.GEOCODE_URL,
            params={"address": query, "key": config.GOOGLE_MAPS_API_KEY},
            timeout=config.GEOCODE_TIMEOUT,
        )
        body = res.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Geocoding request failed: %s", str(e)[:80])
        return None

    if body.get("status") != "OK" or not body.get("results"):
        logger.warning("Geocoding returned %s for %r", body.get("status"), query)
        return None
    loc = body["results"][0]["geometry"]["location"]
    return [loc["lng"], loc["lat"]]


def distance_km(a: List[float], b: List[float]) -> float:
    """Great-circle distance between two [lng, lat] points."""
    lng1, lat1 = map(math.radians, a)
    lng2, lat2 = map(math.radians, b)
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))
