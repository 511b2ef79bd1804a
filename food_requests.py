import logging
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from auth import restrict_to
from database import create_document, delete_document, get_db, update_document
from donations import populate_users, resolve_coordinates
from errors import LifecycleError
from geocoding import distance_km, format_address
from schemas import Quantity, Request, RequestCreate, RequestStatus, RequestUpdate, Urgency
from utils import (
    PageParams,
    near,
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

REQUESTER_FIELDS = ("name", "organization")


# ===== Lifecycle rules =====

def check_needed_by(needed_by: datetime, now: Optional[datetime] = None):
    if needed_by <= (now or utcnow()):
        raise HTTPException(status_code=400, detail="Needed by date must be in the future")


def is_still_needed(request: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return request.get("status") == "pending" and request["neededBy"] > now


def fulfilled_amount(request: dict) -> float:
    return sum(f["quantity"]["amount"] for f in request.get("fulfilledBy", []))


def fulfillment_percentage(request: dict) -> int:
    if not request.get("fulfilledBy"):
        return 0
    requested = request["quantity"]["amount"]
    return min(100, round(fulfilled_amount(request) / requested * 100))


def fulfill(db: Database, request: dict, donation_id: ObjectId, quantity: Quantity,
            now: Optional[datetime] = None) -> dict:
    """Record that `donation_id` covered part of this request.

    Amounts only add up within one unit, so the fulfillment must use the
    request's unit. The request flips to fulfilled once the stored amounts
    reach the requested amount, whatever copy of the request the caller holds.
    """
    now = now or utcnow()
    if request.get("status") != "pending":
        raise LifecycleError("Request is not pending")
    unit = request["quantity"]["unit"]
    if quantity.unit != unit:
        raise LifecycleError(f"Fulfillment must be measured in {unit}")

    entry = {"donation": donation_id, "fulfilledAt": now, "quantity": quantity.model_dump(by_alias=True)}
    updated = db["request"].find_one_and_update(
        {"_id": request["_id"], "status": "pending"},
        {"$push": {"fulfilledBy": entry}, "$set": {"updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise LifecycleError("Request is not pending")

    if fulfilled_amount(updated) >= updated["quantity"]["amount"]:
        flipped = db["request"].find_one_and_update(
            {"_id": updated["_id"], "status": "pending"},
            {"$set": {"status": "fulfilled", "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        updated = flipped or db["request"].find_one({"_id": updated["_id"]})
    logger.info("Request %s fulfilled by donation %s (%s)", request["_id"], donation_id, updated["status"])
    return updated


def cancel(db: Database, request: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    if request.get("status") != "pending":
        raise LifecycleError("Only pending requests can be cancelled")
    updated = db["request"].find_one_and_update(
        {"_id": request["_id"], "status": "pending"},
        {"$set": {"status": "cancelled", "updatedAt": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise LifecycleError("Only pending requests can be cancelled")
    return updated


# ===== Presentation =====

def serialize_request(doc: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    out = serialize_doc(doc)
    out["timeUntilNeeded"] = time_until(doc.get("neededBy"), now, "overdue")
    out["fullAddress"] = format_address((doc.get("location") or {}).get("address"))
    out["fulfillmentPercentage"] = fulfillment_percentage(doc)
    return out


def present(db: Database, docs: List[dict]) -> List[dict]:
    now = utcnow()
    return [serialize_request(d, now) for d in populate_users(db, docs, "requester", REQUESTER_FIELDS)]


def get_request_or_404(db: Database, request_id: str) -> dict:
    request = db["request"].find_one({"_id": oid(request_id)})
    if not request:
        raise HTTPException(status_code=404, detail="Request not found")
    return request


def require_owner(request: dict, user: dict, action: str):
    if request["requester"] != user["_id"]:
        raise HTTPException(
            status_code=403,
            detail=f"Access denied. You can only {action} your own requests.",
        )


# ===== Endpoints =====

@router.get("")
def list_requests(
    params: PageParams = Depends(),
    status: Optional[RequestStatus] = Query(None),
    urgency: Optional[Urgency] = Query(None),
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
    if urgency:
        filt["urgency"] = urgency
    if is_urgent is not None:
        filt["isUrgent"] = is_urgent
    point = parse_point(coordinates, lng, lat)
    if point:
        filt["location.coordinates"] = within_radius(point, radius)

    docs, pagination = paginate(db["request"], filt, params, sort_spec(sort_by, sort_order))
    return success({"requests": present(db, docs), "pagination": pagination})


@router.post("", status_code=201)
def create_request(
    payload: RequestCreate,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    check_needed_by(payload.needed_by)
    data = payload.model_dump(by_alias=True)
    resolve_coordinates(data["location"])

    contact = data.get("contactInfo") or {}
    contact["email"] = contact.get("email") or current_user.get("email")
    contact["phone"] = contact.get("phone") or current_user.get("phone")
    contact.setdefault("preferredContact", "email")
    data["contactInfo"] = contact

    request = create_document(db, "request", Request(**data, requester=current_user["_id"]))
    logger.info("Request %s created by %s", request["_id"], current_user["_id"])
    return success({"request": present(db, [request])[0]}, message="Food request created successfully")


@router.get("/urgent")
def get_urgent_requests(limit: int = Query(20, ge=1, le=100), db: Database = Depends(get_db)):
    docs = list(
        db["request"].find({"isUrgent": True, "status": "pending"}).sort("createdAt", DESCENDING).limit(limit)
    )
    requests = present(db, docs)
    return success({"requests": requests, "count": len(requests)})


@router.get("/nearby")
def get_nearby_requests(
    coordinates: Optional[str] = Query(None, description="longitude,latitude"),
    lng: Optional[float] = Query(None),
    lat: Optional[float] = Query(None),
    max_distance: float = Query(25, gt=0, alias="maxDistance", description="miles"),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    point = parse_point(coordinates, lng, lat)
    if not point:
        raise HTTPException(status_code=400, detail="Coordinates are required for nearby search")

    docs = list(
        db["request"].find({"location.coordinates": near(point, max_distance), "status": "pending"}).limit(limit)
    )
    requests = present(db, docs)
    for out, doc in zip(requests, docs):
        out["distanceKm"] = round(distance_km(point, doc["location"]["coordinates"]["coordinates"]), 2)
    return success({"requests": requests, "count": len(requests), "maxDistance": max_distance})


@router.get("/my-requests")
def get_my_requests(
    params: PageParams = Depends(),
    status: Optional[RequestStatus] = Query(None),
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    filt: dict = {"requester": current_user["_id"]}
    if status:
        filt["status"] = status
    docs, pagination = paginate(db["request"], filt, params, sort_spec("createdAt", "desc"), with_links=False)
    return success({"requests": present(db, docs), "pagination": pagination})


@router.get("/stats")
def get_request_stats(current_user: dict = Depends(restrict_to("ngo")), db: Database = Depends(get_db)):
    match = {"$match": {"requester": current_user["_id"]}}

    totals = list(db["request"].aggregate([
        match,
        {"$group": {
            "_id": None,
            "totalRequests": {"$sum": 1},
            "pendingRequests": {"$sum": {"$cond": [{"$eq": ["$status", "pending"]}, 1, 0]}},
            "fulfilledRequests": {"$sum": {"$cond": [{"$eq": ["$status", "fulfilled"]}, 1, 0]}},
            "cancelledRequests": {"$sum": {"$cond": [{"$eq": ["$status", "cancelled"]}, 1, 0]}},
            "totalBeneficiaries": {"$sum": "$beneficiaries.count"},
        }},
    ]))
    by_urgency = db["request"].aggregate([match, {"$group": {"_id": "$urgency", "count": {"$sum": 1}}}])
    monthly = db["request"].aggregate([
        match,
        {"$group": {
            "_id": {"year": {"$year": "$createdAt"}, "month": {"$month": "$createdAt"}},
            "count": {"$sum": 1},
            "beneficiaries": {"$sum": "$beneficiaries.count"},
        }},
        {"$sort": {"_id.year": -1, "_id.month": -1}},
        {"$limit": 12},
    ])

    stats = {
        "totalRequests": 0,
        "pendingRequests": 0,
        "fulfilledRequests": 0,
        "cancelledRequests": 0,
        "totalBeneficiaries": 0,
    }
    if totals:
        stats.update({k: v for k, v in totals[0].items() if k != "_id"})
    urgency_stats = [{"urgency": u["_id"], "count": u["count"]} for u in by_urgency]
    monthly_stats = [
        {
            "year": m["_id"]["year"],
            "month": m["_id"]["month"],
            "count": m["count"],
            "beneficiaries": m["beneficiaries"],
        }
        for m in monthly
    ]
    return success({"stats": stats, "urgencyStats": urgency_stats, "monthlyStats": monthly_stats})


@router.get("/{request_id}")
def get_request(request_id: str, db: Database = Depends(get_db)):
    request = get_request_or_404(db, request_id)
    return success({"request": present(db, [request])[0]})


@router.put("/{request_id}")
def update_request(
    request_id: str,
    payload: RequestUpdate,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    request = get_request_or_404(db, request_id)
    require_owner(request, current_user, "update")
    if request["status"] != "pending":
        raise HTTPException(status_code=400, detail="Cannot update fulfilled or cancelled requests")

    updates = payload.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    if "neededBy" in updates:
        check_needed_by(updates["neededBy"])
    if "location" in updates:
        resolve_coordinates(updates["location"])

    updated = update_document(db, "request", {"_id": request["_id"], "status": "pending"}, updates)
    if updated is None:
        raise HTTPException(status_code=400, detail="Cannot update fulfilled or cancelled requests")
    return success({"request": present(db, [updated])[0]}, message="Request updated successfully")


@router.delete("/{request_id}")
def delete_request(
    request_id: str,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    request = get_request_or_404(db, request_id)
    require_owner(request, current_user, "delete")
    if request["status"] != "pending" or not delete_document(
        db, "request", {"_id": request["_id"], "status": "pending"}
    ):
        raise HTTPException(status_code=400, detail="Cannot delete fulfilled or cancelled requests")
    return success(message="Request deleted successfully")


@router.post("/{request_id}/cancel")
def cancel_request(
    request_id: str,
    current_user: dict = Depends(restrict_to("ngo")),
    db: Database = Depends(get_db),
):
    request = get_request_or_404(db, request_id)
    require_owner(request, current_user, "cancel")
    request = cancel(db, request)
    logger.info("Request %s cancelled by %s", request["_id"], current_user["_id"])
    return success({"request": present(db, [request])[0]}, message="Request cancelled successfully")
