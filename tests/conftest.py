from datetime import datetime, timedelta, timezone
from itertools import count

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app

_seq = count()


def iso(dt: datetime) -> str:
    return dt.isoformat()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db():
    return mongomock.MongoClient()["sharebutes_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Register a user and return (token, user)."""

    def _register(user_type="donor", **overrides):
        n = next(_seq)
        body = {
            "name": f"{user_type.title()} {n}",
            "email": f"{user_type}{n}@sharebutes.org",
            "password": "secret123",
            "userType": user_type,
            "organization": f"Org {n}" if user_type == "ngo" else None,
            "phone": "555-0100",
        }
        body.update(overrides)
        res = client.post("/api/auth/register", json=body)
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        return data["token"], data["user"]

    return _register


@pytest.fixture
def donor(register):
    return register("donor")


@pytest.fixture
def ngo(register):
    return register("ngo")


@pytest.fixture
def donation_payload():
    def _payload(**overrides):
        now = now_utc()
        body = {
            "title": "Leftover biryani",
            "description": "Two trays of vegetable biryani from a catering event",
            "foodType": "cooked",
            "quantity": {"amount": 40, "unit": "meals"},
            "allergens": ["none"],
            "dietaryRestrictions": ["vegetarian"],
            "preparationTime": iso(now - timedelta(hours=1)),
            "expiryTime": iso(now + timedelta(hours=12)),
            "pickupTime": {
                "start": iso(now + timedelta(hours=1)),
                "end": iso(now + timedelta(hours=4)),
            },
            "location": {
                "address": {"street": "12 Market St", "city": "Springfield", "state": "IL", "zipCode": "62701"},
                "coordinates": {"type": "Point", "coordinates": [-89.65, 39.78]},
                "pickupInstructions": "Back entrance",
            },
            "tags": ["catering"],
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture
def request_payload():
    def _payload(**overrides):
        body = {
            "title": "Dinner for shelter",
            "description": "Hot meals for tonight's residents",
            "foodTypes": ["cooked"],
            "quantity": {"amount": 50, "unit": "meals"},
            "urgency": "high",
            "neededBy": iso(now_utc() + timedelta(days=1)),
            "location": {
                "address": {"street": "3 Elm Ave", "city": "Springfield", "state": "IL"},
                "coordinates": {"type": "Point", "coordinates": [-89.64, 39.80]},
            },
            "beneficiaries": {"count": 50, "type": "homeless"},
            "isUrgent": True,
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture
def create_donation(client, donor, donation_payload):
    def _create(token=None, **overrides):
        res = client.post(
            "/api/donations",
            json=donation_payload(**overrides),
            headers=auth_header(token or donor[0]),
        )
        assert res.status_code == 201, res.text
        return res.json()["data"]["donation"]

    return _create


@pytest.fixture
def create_request(client, ngo, request_payload):
    def _create(token=None, **overrides):
        res = client.post(
            "/api/requests",
            json=request_payload(**overrides),
            headers=auth_header(token or ngo[0]),
        )
        assert res.status_code == 201, res.text
        return res.json()["data"]["request"]

    return _create
