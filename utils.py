import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException, Query
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection

METERS_PER_MILE = 1609.34
EARTH_RADIUS_MILES = 3963.2


def utcnow() -> datetime:
    """Current time as naive UTC, the form pymongo hands back from the database."""
    return to_naive_utc(datetime.now(timezone.utc))


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC truncated to milliseconds, matching what BSON can store."""
    if value is None:
        return value
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID")


def serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return {k: serialize_value(v) for k, v in doc.items()}


def success(data: Optional[dict] = None, message: Optional[str] = None) -> dict:
    """Standard response envelope."""
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


# ===== Pagination / sorting =====

class PageParams:
    def __init__(
        self,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ):
        self.page = page
        self.limit = limit

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def sort_spec(sort_by: str, sort_order: str) -> List[Tuple[str, int]]:
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    # _id breaks ties so consecutive pages never overlap
    return [(sort_by, direction), ("_id", direction)]


def paginate(
    collection: Collection,
    filt: dict,
    params: PageParams,
    sort: List[Tuple[str, int]],
    with_links: bool = True,
) -> Tuple[List[dict], dict]:
    docs = list(collection.find(filt).sort(sort).skip(params.skip).limit(params.limit))
    total = collection.count_documents(filt)
    total_pages = math.ceil(total / params.limit)
    pagination = {
        "currentPage": params.page,
        "totalPages": total_pages,
        "total": total,
        "limit": params.limit,
    }
    if with_links:
        pagination["hasNextPage"] = params.page < total_pages
        pagination["hasPrevPage"] = params.page > 1
    return docs, pagination


# ===== Geo helpers =====

def parse_coordinates(raw: Optional[str]) -> Optional[List[float]]:
    """Parse a "lng,lat" query string into a [lng, lat] pair."""
    if not raw:
        return None
    parts = raw.split(",")
    if len(parts) != 2:
        raise HTTPException(status_code=400, detail="Coordinates must be given as 'longitude,latitude'")
    try:
        lng, lat = float(parts[0]), float(parts[1])
    except ValueError:
        raise HTTPException(status_code=400, detail="Coordinates must be numeric")
    return _checked_point(lng, lat)


def parse_point(
    coordinates: Optional[str] = None,
    lng: Optional[float] = None,
    lat: Optional[float] = None,
) -> Optional[List[float]]:
    """Search point from separate `lng`/`lat` params, else from a "lng,lat" string."""
    if lng is None and lat is None:
        return parse_coordinates(coordinates)
    if lng is None or lat is None:
        raise HTTPException(status_code=400, detail="Both lng and lat are required")
    return _checked_point(lng, lat)


def _checked_point(lng: float, lat: float) -> List[float]:
    if not (-180 <= lng <= 180 and -90 <= lat <= 90):
        raise HTTPException(status_code=400, detail="Coordinates out of range")
    return [lng, lat]


def within_radius(coordinates: List[float], radius_miles: float) -> dict:
    """Countable proximity filter (unlike $near, usable with count_documents)."""
    return {"$geoWithin": {"$centerSphere": [coordinates, radius_miles / EARTH_RADIUS_MILES]}}


def near(coordinates: List[float], max_distance_miles: float) -> dict:
    """Distance-sorted proximity filter."""
    return {
        "$near": {
            "$geometry": {"type": "Point", "coordinates": coordinates},
            "$maxDistance": max_distance_miles * METERS_PER_MILE,
        }
    }


def time_until(target: Optional[datetime], now: datetime, past_label: str) -> str:
    """Humanized remaining time: "2 days", "1 hour", "less than 1 hour" or `past_label`."""
    if target is None:
        return past_label
    seconds = (target - now).total_seconds()
    if seconds <= 0:
        return past_label
    hours = int(seconds // 3600)
    days = hours // 24
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    return "less than 1 hour"
