import logging
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import get_current_user, restrict_to, update_stats
from database import create_document, delete_document, get_db, update_document
from errors import LifecycleError
from geocoding import format_address, geocode_address
from schemas import Donation, DonationCreate, DonationStatus, DonationUpdate, FoodType
from utils import (
    PageParams,
    oid,
    paginate,
    parse_point,
    serialize_doc,
    sort_spec,
    success,
    time_until,
    utcnow,
    within_radius,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DONOR_FIELDS = ("name", "organization", "phone")


# ===== Lifecycle rules =====

def check_donation_times(doc: dict):
    """Pickup window must be ordered and the food must expire after it was prepared."""
    pickup = doc.get("pickupTime") or {}
    if pickup.get("start") and pickup.get("end") and pickup["start"] >= pickup["end"]:
        raise HTTPException(status_code=400, detail="Pickup end time must be after start time")
    prep, expiry = doc.get("preparationTime"), doc.get("expiryTime")
    if prep and expiry and expiry <= prep:
        raise HTTPException(status_code=400, detail="Expiry time must be after preparation time")


def availability_filter(now: datetime) -> dict:
    return {"status": "available", "expiryTime": {"$gt": now}, "pickupTime.end": {"$gt": now}}


def is_available(donation: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (
        donation.get("status") == "available"
        and donation["expiryTime"] > now
        and donation["pickupTime"]["end"] > now
    )


def claim(db: Database, donation_id: ObjectId, user_id: ObjectId, now: Optional[datetime] = None) -> dict:
    """Reserve an available donation for `user_id`.

    The availability predicate is part of the update filter, so of two
    concurrent claims at most one matches.
    """
    now = now or utcnow()
    donation = db["donation"].find_one_and_update(
        {"_id": donation_id, **availability_filter(now)},
        {"$set": {
            "status": "claimed",
            "claimed": True,
            "claimedBy": user_id,
            "claimedAt": now,
            "updatedAt": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if donation is None:
        raise LifecycleError("Donation is not available for claiming")
    return donation


def mark_picked_up(db: Database, donation: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    if donation.get("status") != "claimed":
        raise LifecycleError("Donation must be claimed before marking as picked up")
    updated = db["donation"].find_one_and_update(
        {"_id": donation["_id"], "status": "claimed"},
        {"$set": {"status": "picked-up", "pickedUpAt": now, "updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise LifecycleError("Donation must be claimed before marking as picked up")
    return updated


def record_claim_stats(db: Database, donation: dict):
    # Separate write from the claim itself; a failure leaves the claim in place
    try:
        update_stats(db, donation["donor"], 1, donation["quantity"]["amount"])
    except Exception:
        logger.exception("Failed to update donor stats for donation %s", donation["_id"])


# ===== Presentation =====

def pickup_window(pickup: dict) -> str:
    if not pickup or not pickup.get("start") or not pickup.get("end"):
        return ""
    return f"{pickup['start'].strftime('%I:%M %p')} - {pickup['end'].strftime('%I:%M %p')} UTC"


def populate_users(db: Database, docs: List[dict], field: str, fields=DONOR_FIELDS) -> List[dict]:
    """Replace the user id stored under `field` with a small profile, one query for all docs."""
    ids = {d[field] for d in docs if isinstance(d.get(field), ObjectId)}
    if not ids:
        return docs
    projection = {f: 1 for f in fields}
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": list(ids)}}, projection)}
    for d in docs:
        user = users.get(d.get(field))
        if user is not None:
            d[field] = {"_id": user["_id"], **{f: user.get(f) for f in fields}}
    return docs


def serialize_donation(doc: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    out = serialize_doc(doc)
    out["timeUntilExpiry"] = time_until(doc.get("expiryTime"), now, "expired")
    out["pickupWindow"] = pickup_window(doc.get("pickupTime"))
    out["fullAddress"] = format_address((doc.get("location") or {}).get("address"))
    return out


def present(db: Database, docs: List[dict]) -> List[dict]:
    now = utcnow()
    return [serialize_donation(d, now) for d in populate_users(db, docs, "donor")]


def resolve_coordinates(location: dict):
    """Fill location.coordinates from the address when the client sent none."""
    if location.get("coordinates"):
        return
    coords = geocode_address(location.get("address"))
    if coords is None:
        raise HTTPException(
            status_code=400,
            detail="Location coordinates are required (address could not be geocoded)",
        )
    location["coordinates"] = {"type": "Point", "coordinates": coords}


def get_donation_or_404(db: Database, donation_id: str) -> dict:
    donation = db["donation"].find_one({"_id": oid(donation_id)})
    if not donation:
        raise HTTPException(status_code=404, detail="Donation not found")
    return donation


def require_owner(donation: dict, user: dict, action: str):
    if donation["donor"] != user["_id"]:
        raise HTTPException(
            status_code=403,
            detail=f"Access denied. You can only {action} your own donations.",
        )


# ===== Endpoints =====

@router.get("")
def list_donations(
    params: PageParams = Depends(),
    status: Optional[DonationStatus] = Query(None),
    food_type: Optional[FoodType] = Query(None, alias="foodType"),
    is_urgent: Optional[bool] = Query(None, alias="isUrgent"),
    coordinates: Optional[str] = Query(None, description="longitude,latitude"),
    lng: Optional[float] = Query(None),
    lat: Optional[float] = Query(None),
    radius: float = Query(25, gt=0, description="miles"),
    sort_by: str = Query("createdAt", alias="sortBy", pattern=r"^[A-Za-z][A-Za-z0-9_.]*$"),
    sort_order: Literal['asc', 'desc'] = Query("desc", alias="sortOrder"),
    db: Database = Depends(get_db),
):
    filt: dict = {}
    if status:
        filt["status"] = status
    # Claimed donations are hidden unless explicitly asked for
    if not status or status == "available":
        filt["claimed"] = {"$ne": True}
    if food_type:
        filt["foodType"] = food_type
    if is_urgent is not None:
        filt["isUrgent"] = is_urgent
    point = parse_point(coordinates, lng, lat)
    if point:
        filt["location.coordinates"] = within_radius(point, radius)

    docs, pagination = paginate(db["donation"], filt, params, sort_spec(sort_by, sort_order))
    return success({"donations": present(db, docs), "pagination": pagination})


@router.post("", status_code=201)
def create_donation(
    payload: DonationCreate,
    current_user: dict = Depends(restrict_to("donor")),
    db: Database = Depends(get_db),
):
    data = payload.model_dump(by_alias=True)
    check_donation_times(data)
    resolve_coordinates(data["location"])

    donation = create_document(db, "donation", Donation(**data, donor=current_user["_id"]))
    logger.info("Donation %s created by %s", donation["_id"], current_user["_id"])
    return success({"donation": present(db, [donation])[0]}, message="Donation created successfully")


@router.get("/stats")
def get_donation_stats(current_user: dict = Depends(restrict_to("donor")), db: Database = Depends(get_db)):
    match = {"$match": {"donor": current_user["_id"]}}

    totals = list(db["donation"].aggregate([
        match,
        {"$group": {
            "_id": None,
            "totalDonations": {"$sum": 1},
            "availableDonations": {"$sum": {"$cond": [{"$eq": ["$status", "available"]}, 1, 0]}},
            "claimedDonations": {"$sum": {"$cond": [{"$eq": ["$status", "claimed"]}, 1, 0]}},
            "pickedUpDonations": {"$sum": {"$cond": [{"$eq": ["$status", "picked-up"]}, 1, 0]}},
            "totalMeals": {"$sum": "$quantity.amount"},
        }},
    ]))
    monthly = db["donation"].aggregate([
        match,
        {"$group": {
            "_id": {"year": {"$year": "$createdAt"}, "month": {"$month": "$createdAt"}},
            "count": {"$sum": 1},
            "meals": {"$sum": "$quantity.amount"},
        }},
        {"$sort": {"_id.year": -1, "_id.month": -1}},
        {"$limit": 12},
    ])

    stats = {
        "totalDonations": 0,
        "availableDonations": 0,
        "claimedDonations": 0,
        "pickedUpDonations": 0,
        "totalMeals": 0,
    }
    if totals:
        stats.update({k: v for k, v in totals[0].items() if k != "_id"})
    monthly_stats = [
        {"year": m["_id"]["year"], "month": m["_id"]["month"], "count": m["count"], "meals": m["meals"]}
        for m in monthly
    ]
    return success({"stats": stats, "monthlyStats": monthly_stats})


@router.get("/my-donations")
def get_my_donations(
    params: PageParams = Depends(),
    status: Optional[DonationStatus] = Query(None),
    current_user: dict = Depends(restrict_to("donor")),
    db: Database = Depends(get_db),
):
    filt: dict = {"donor": current_user["_id"]}
    if status:
        filt["status"] = status
    docs, pagination = paginate(db["donation"], filt, params, sort_spec("createdAt", "desc"), with_links=False)
    return success({"donations": present(db, docs), "pagination": pagination})


@router.get("/claimed-by-me")
def get_claimed_by_me(
    params: PageParams = Depends(),
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    filt = {"claimedBy": current_user["_id"]}
    docs, pagination = paginate(db["donation"], filt, params, sort_spec("createdAt", "desc"), with_links=False)
    return success({"donations": present(db, docs), "pagination": pagination})


@router.get("/{donation_id}")
def get_donation(
    donation_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    donation = get_donation_or_404(db, donation_id)
    return success({"donation": present(db, [donation])[0]})


@router.put("/{donation_id}")
def update_donation(
    donation_id: str,
    payload: DonationUpdate,
    current_user: dict = Depends(restrict_to("donor")),
    db: Database = Depends(get_db),
):
    donation = get_donation_or_404(db, donation_id)
    require_owner(donation, current_user, "update")
    if donation["status"] != "available":
        raise HTTPException(status_code=400, detail="Cannot update claimed or picked up donations")

    updates = payload.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    check_donation_times({**donation, **updates})
    if "location" in updates:
        resolve_coordinates(updates["location"])

    # Status is part of the filter so a claim landing in between is not overwritten
    updated = update_document(db, "donation", {"_id": donation["_id"], "status": "available"}, updates)
    if updated is None:
        raise HTTPException(status_code=400, detail="Cannot update claimed or picked up donations")
    return success({"donation": present(db, [updated])[0]}, message="Donation updated successfully")


@router.delete("/{donation_id}")
def delete_donation(
    donation_id: str,
    current_user: dict = Depends(restrict_to("donor")),
    db: Database = Depends(get_db),
):
    donation = get_donation_or_404(db, donation_id)
    require_owner(donation, current_user, "delete")
    if donation["status"] != "available" or not delete_document(
        db, "donation", {"_id": donation["_id"], "status": "available"}
    ):
        raise HTTPException(status_code=400, detail="Cannot delete claimed or picked up donations")
    logger.info("Donation %s deleted by %s", donation["_id"], current_user["_id"])
    return success(message="Donation deleted successfully")


@router.post("/{donation_id}/claim")
def claim_donation(
    donation_id: str,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    donation = get_donation_or_404(db, donation_id)
    donation = claim(db, donation["_id"], current_user["_id"])
    logger.info("Donation %s claimed by %s", donation["_id"], current_user["_id"])
    record_claim_stats(db, donation)
    return success({"donation": present(db, [donation])[0]}, message="Donation claimed successfully")


@router.post("/{donation_id}/pickup")
def mark_as_picked_up(
    donation_id: str,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    donation = get_donation_or_404(db, donation_id)
    if donation.get("claimedBy") != current_user["_id"]:
        raise HTTPException(
            status_code=403,
            detail="Access denied. You can only mark donations you claimed as picked up.",
        )
    donation = mark_picked_up(db, donation)
    logger.info("Donation %s picked up by %s", donation["_id"], current_user["_id"])
    return success(
        {"donation": present(db, [donation])[0]},
        message="Donation marked as picked up successfully",
    )
