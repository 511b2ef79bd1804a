from datetime import timedelta

import pytest
from bson import ObjectId

import food_requests
from conftest import auth_header, iso, now_utc
from database import create_document
from errors import LifecycleError
from food_requests import cancel, fulfill, fulfillment_percentage, is_still_needed
from geocoding import distance_km
from schemas import Quantity, Request
from utils import utcnow


def test_create_request(client, ngo, create_request):
    request = create_request()
    assert request["status"] == "pending"
    assert request["requester"]["id"] == ngo[1]["id"]
    assert request["requester"]["organization"] == ngo[1]["organization"]
    assert request["fulfilledBy"] == []
    assert request["fulfillmentPercentage"] == 0
    assert request["timeUntilNeeded"] == "23 hours"
    # contact details fall back to the requester's account
    assert request["contactInfo"]["email"] == ngo[1]["email"]
    assert request["contactInfo"]["phone"] == "555-0100"
    assert request["contactInfo"]["preferredContact"] == "email"


def test_create_request_needed_by_must_be_future(client, ngo, request_payload):
    res = client.post("/api/requests", json=request_payload(neededBy=iso(now_utc() - timedelta(minutes=1))),
                      headers=auth_header(ngo[0]))
    assert res.status_code == 400
    assert res.json()["message"] == "Needed by date must be in the future"


def test_create_request_ngo_only(client, donor, request_payload):
    res = client.post("/api/requests", json=request_payload(), headers=auth_header(donor[0]))
    assert res.status_code == 403


def test_get_request_is_public(client, create_request):
    request = create_request()
    res = client.get(f"/api/requests/{request['id']}")
    assert res.status_code == 200
    assert res.json()["data"]["request"]["title"] == "Dinner for shelter"
    assert client.get(f"/api/requests/{ObjectId()}").status_code == 404


def test_list_requests_filters_and_pagination(client, create_request):
    for i in range(12):
        create_request(urgency="low" if i % 2 else "critical", isUrgent=False)

    res = client.get("/api/requests", params={"urgency": "critical", "limit": 4, "page": 2})
    data = res.json()["data"]
    assert len(data["requests"]) == 2
    assert all(r["urgency"] == "critical" for r in data["requests"])
    assert data["pagination"]["total"] == 6
    assert data["pagination"]["totalPages"] == 2
    assert data["pagination"]["hasNextPage"] is False
    assert data["pagination"]["hasPrevPage"] is True


def test_urgent_requests(client, ngo, create_request):
    urgent = create_request(isUrgent=True)
    create_request(isUrgent=False)
    cancelled = create_request(isUrgent=True)
    client.post(f"/api/requests/{cancelled['id']}/cancel", headers=auth_header(ngo[0]))

    data = client.get("/api/requests/urgent").json()["data"]
    assert data["count"] == 1
    assert data["requests"][0]["id"] == urgent["id"]


def test_nearby_requires_coordinates(client):
    res = client.get("/api/requests/nearby")
    assert res.status_code == 400
    assert res.json()["message"] == "Coordinates are required for nearby search"
    assert client.get("/api/requests/nearby", params={"coordinates": "abc"}).status_code == 400


def test_update_request(client, ngo, create_request):
    request = create_request()
    res = client.put(f"/api/requests/{request['id']}", json={"urgency": "critical", "notes": "Gate code 42"},
                     headers=auth_header(ngo[0]))
    assert res.status_code == 200
    assert res.json()["data"]["request"]["urgency"] == "critical"
    assert res.json()["data"]["request"]["notes"] == "Gate code 42"

    past = client.put(f"/api/requests/{request['id']}", json={"neededBy": iso(now_utc() - timedelta(hours=1))},
                      headers=auth_header(ngo[0]))
    assert past.status_code == 400


def test_ownership_is_enforced(client, register, create_request):
    request = create_request()
    intruder, _ = register("ngo")
    headers = auth_header(intruder)
    assert client.put(f"/api/requests/{request['id']}", json={"title": "x"}, headers=headers).status_code == 403
    assert client.delete(f"/api/requests/{request['id']}", headers=headers).status_code == 403
    assert client.post(f"/api/requests/{request['id']}/cancel", headers=headers).status_code == 403


def test_cancel_only_pending(client, ngo, create_request):
    request = create_request()
    url = f"/api/requests/{request['id']}/cancel"
    res = client.post(url, headers=auth_header(ngo[0]))
    assert res.status_code == 200
    assert res.json()["data"]["request"]["status"] == "cancelled"

    again = client.post(url, headers=auth_header(ngo[0]))
    assert again.status_code == 400
    assert again.json()["message"] == "Only pending requests can be cancelled"

    assert client.put(f"/api/requests/{request['id']}", json={"title": "x"},
                      headers=auth_header(ngo[0])).status_code == 400
    assert client.delete(f"/api/requests/{request['id']}", headers=auth_header(ngo[0])).status_code == 400


def test_delete_pending_request(client, db, ngo, create_request):
    request = create_request()
    res = client.delete(f"/api/requests/{request['id']}", headers=auth_header(ngo[0]))
    assert res.status_code == 200
    assert db["request"].count_documents({}) == 0


def test_my_requests(client, ngo, register, create_request):
    mine = create_request()
    other, _ = register("ngo")
    create_request(token=other)

    data = client.get("/api/requests/my-requests", headers=auth_header(ngo[0])).json()["data"]
    assert [r["id"] for r in data["requests"]] == [mine["id"]]


def test_request_stats(client, ngo, create_request):
    create_request(urgency="high", beneficiaries={"count": 20, "type": "children"})
    cancelled = create_request(urgency="low", beneficiaries={"count": 5, "type": "elderly"})
    client.post(f"/api/requests/{cancelled['id']}/cancel", headers=auth_header(ngo[0]))

    data = client.get("/api/requests/stats", headers=auth_header(ngo[0])).json()["data"]
    assert data["stats"] == {
        "totalRequests": 2,
        "pendingRequests": 1,
        "fulfilledRequests": 0,
        "cancelledRequests": 1,
        "totalBeneficiaries": 25,
    }
    assert sorted((u["urgency"], u["count"]) for u in data["urgencyStats"]) == [("high", 1), ("low", 1)]
    assert data["monthlyStats"][0]["beneficiaries"] == 25


# ===== Lifecycle operations =====

@pytest.fixture
def stored_request(db, request_payload):
    def _store(**overrides):
        body = request_payload(**overrides)
        return create_document(db, "request", Request(**body, requester=ObjectId()))

    return _store


def test_fulfill_partial_then_complete(db, stored_request):
    request = stored_request(quantity={"amount": 50, "unit": "meals"})

    partial = fulfill(db, request, ObjectId(), Quantity(amount=20, unit="meals"))
    assert partial["status"] == "pending"
    assert len(partial["fulfilledBy"]) == 1
    assert fulfillment_percentage(partial) == 40

    done = fulfill(db, partial, ObjectId(), Quantity(amount=30, unit="meals"))
    assert done["status"] == "fulfilled"
    assert fulfillment_percentage(done) == 100

    with pytest.raises(LifecycleError):
        fulfill(db, done, ObjectId(), Quantity(amount=1, unit="meals"))


def test_fulfillment_percentage_caps_at_100(db, stored_request):
    request = stored_request(quantity={"amount": 10, "unit": "meals"})
    over = fulfill(db, request, ObjectId(), Quantity(amount=25, unit="meals"))
    assert over["status"] == "fulfilled"
    assert fulfillment_percentage(over) == 100


def test_cancel_and_still_needed(db, stored_request):
    request = stored_request()
    assert is_still_needed(request)
    assert not is_still_needed(request, now=utcnow() + timedelta(days=2))

    cancelled = cancel(db, request)
    assert cancelled["status"] == "cancelled"
    assert not is_still_needed(cancelled)
    with pytest.raises(LifecycleError):
        cancel(db, cancelled)


def test_fulfill_with_stale_copy_still_completes(db, stored_request):
    request = stored_request(quantity={"amount": 50, "unit": "meals"})

    first = fulfill(db, request, ObjectId(), Quantity(amount=30, unit="meals"))
    assert first["status"] == "pending"
    # second call reuses the copy taken before any fulfillment
    second = fulfill(db, request, ObjectId(), Quantity(amount=30, unit="meals"))
    assert second["status"] == "fulfilled"
    assert len(second["fulfilledBy"]) == 2

    stored = db["request"].find_one({"_id": request["_id"]})
    assert stored["status"] == "fulfilled"
    assert fulfillment_percentage(stored) == 100


def test_fulfill_rejects_other_units(db, stored_request):
    request = stored_request(quantity={"amount": 50, "unit": "meals"})
    with pytest.raises(LifecycleError) as exc:
        fulfill(db, request, ObjectId(), Quantity(amount=20, unit="pounds"))
    assert exc.value.message == "Fulfillment must be measured in meals"
    assert db["request"].find_one({"_id": request["_id"]})["fulfilledBy"] == []


# ===== Proximity =====

def test_list_requests_near_point(client, create_request, monkeypatch):
    create_request()
    searches = []

    # mongomock has no $geoWithin; match by great-circle distance to the stored point instead
    def within(point, radius_miles):
        searches.append((point, radius_miles))
        return {"$exists": distance_km(point, [-89.64, 39.80]) <= radius_miles * 1.60934}

    monkeypatch.setattr(food_requests, "within_radius", within)

    far = client.get("/api/requests", params={"lng": 10, "lat": 10, "radius": 1}).json()["data"]
    assert far["pagination"]["total"] == 0

    close = client.get("/api/requests", params={"coordinates": "-89.65,39.79", "radius": 5}).json()["data"]
    assert close["pagination"]["total"] == 1
    assert searches == [([10.0, 10.0], 1.0), ([-89.65, 39.79], 5.0)]


def test_nearby_requires_both_lng_and_lat(client):
    res = client.get("/api/requests/nearby", params={"lng": -89.65})
    assert res.status_code == 400
    assert res.json()["message"] == "Both lng and lat are required"
