import itertools
import json
from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token
from database import get_db
from errors import InvalidSignature, InvalidState
from main import app
from payments import get_payment_provider


class FakeProvider:
    """In-memory stand-in for the Stripe wrapper."""

    def __init__(self):
        self.intents = {}
        self._ids = itertools.count(1)

    def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_test_{next(self._ids)}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "requires_payment_method",
            "amount": amount,
            "currency": currency,
            "client_secret": f"{intent_id}_secret",
            "metadata": dict(metadata),
        }
        return dict(self.intents[intent_id])

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise InvalidState(f"Unknown payment intent {intent_id}")
        return dict(self.intents[intent_id])

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"
        return dict(self.intents[intent_id])

    def parse_event(self, payload, signature):
        if signature != "valid-signature":
            raise InvalidSignature("Invalid webhook signature")
        event = json.loads(payload)
        return {"type": event["type"], "intent": event["data"]["object"]}


@pytest.fixture
def db():
    return mongomock.MongoClient()["homedish_test"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(db, provider):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(email, role="user"):
        token = create_token({"uid": f"uid-{email}", "email": email, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_account(db):
    def _make(email, role="user", status="active", chef_id=None, name=None):
        doc = {
            "uid": f"uid-{email}",
            "name": name or email.split("@")[0].title(),
            "email": email,
            "role": role,
            "status": status,
        }
        if chef_id:
            doc["chefId"] = chef_id
        db["users"].insert_one(doc)
        return doc
    return _make


@pytest.fixture
def make_meal(db):
    def _make(chef, name="Chicken Biryani", price=10.0):
        result = db["meals"].insert_one({
            "name": name,
            "price": price,
            "ingredients": ["rice", "chicken"],
            "rating": 0,
            "chefId": chef["chefId"],
            "chefName": chef["name"],
            "chefEmail": chef["email"],
            "created_at": datetime.now(timezone.utc),
        })
        return str(result.inserted_id)
    return _make


@pytest.fixture
def admin(make_account):
    return make_account("admin@example.com", role="admin")


@pytest.fixture
def chef(make_account):
    return make_account("chef@example.com", role="chef", chef_id="chef-1234", name="Rahima")


@pytest.fixture
def customer(make_account):
    return make_account("alice@example.com")


@pytest.fixture
def meal_id(make_meal, chef):
    return make_meal(chef)


@pytest.fixture
def place_order(client, auth):
    def _place(email, food_id, quantity=1, **extra):
        body = {"foodId": food_id, "quantity": quantity, "userEmail": email, **extra}
        resp = client.post("/orders", json=body, headers=auth(email))
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _place
