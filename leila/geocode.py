import logging
import time
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException, Query

from . import config
from .config import API_PREFIX

logger = logging.getLogger(__name__)

router = APIRouter()

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
UA = "leila-home-services/1.0 (+https://heyleila.com)"
NOM_HEADERS = {"User-Agent": UA, "Accept-Language": "en-US"}
HTTP_TIMEOUT = 10.0


def _norm(s: str) -> str:
    return " ".join((s or "").split())


def _geocode_google(address: str) -> Optional[Dict[str, Any]]:
    if not config.GOOGLE_MAPS_API_KEY:
        return None
    with httpx.Client(timeout=HTTP_TIMEOUT) as c:
        r = c.get(GEOCODE_URL, params={"address": address, "key": config.GOOGLE_MAPS_API_KEY})
        if r.status_code in (429, 500, 503):
            time.sleep(0.6)
            r = c.get(GEOCODE_URL, params={"address": address, "key": config.GOOGLE_MAPS_API_KEY})
        if r.status_code != 200:
            logger.warning("Google geocoding returned HTTP %s for %r", r.status_code, address)
            return None
        data = r.json()
    if data.get("status") != "OK" or not data.get("results"):
        return None
    best = data["results"][0]
    loc = (best.get("geometry") or {}).get("location") or {}
    return {
        "lat": float(loc["lat"]),
        "lng": float(loc["lng"]),
        "formattedAddress": best.get("formatted_address") or address,
        "placeId": best.get("place_id"),
        "source": "google",
    }


def _geocode_nominatim(address: str) -> Optional[Dict[str, Any]]:
    q = {"q": address, "format": "json", "limit": 1}
    with httpx.Client(timeout=HTTP_TIMEOUT, headers=NOM_HEADERS) as c:
        r = c.get(NOMINATIM_URL, params=q)
        results = r.json() if r.status_code == 200 else []
    if not results:
        return None
    rec = results[0]
    return {
        "lat": float(rec["lat"]),
        "lng": float(rec["lon"]),
        "formattedAddress": rec.get("display_name") or address,
        "placeId": rec.get("osm_id"),
        "source": "nominatim",
    }


class _NotResolved(Exception):
    """Raised for a miss so ``lru_cache`` never keeps it."""


@lru_cache(maxsize=512)
def _geocode_cached(address: str) -> Dict[str, Any]:
    result = _geocode_google(address) or _geocode_nominatim(address)
    if not result:
        # misses include transient provider failures, so only hits are cached
        raise _NotResolved(address)
    return result


def geocode_address(address: str) -> Optional[Dict[str, Any]]:
    """Resolve a free-form address to coordinates, or ``None`` if nobody knows it."""
    address = _norm(address)
    if not address:
        return None
    try:
        result = _geocode_cached(address)
    except _NotResolved:
        return None
    except httpx.HTTPError as exc:
        logger.warning("Geocoding failed for %r: %s", address, exc)
        return None
    return dict(result)


@router.get(f"{API_PREFIX}/geocode")
def geocode(address: str = Query("", description="Street address to resolve")):
    if not _norm(address):
        raise HTTPException(status_code=400, detail="Address parameter required")
    result = geocode_address(address)
    if not result:
        raise HTTPException(status_code=404, detail="Address could not be resolved")
    return {
        "results": [
            {
                "formatted_address": result["formattedAddress"],
                "geometry": {"location": {"lat": result["lat"], "lng": result["lng"]}},
                "place_id": result["placeId"],
                "source": result["source"],
            }
        ]
    }
