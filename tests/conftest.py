import json

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import catalog
import database
from errors import InvalidInput, ProcessorError
from main import app
from processor import get_processor

PASSWORD = "secret123"
_password_hash = None


def password_hash():
    global _password_hash
    if _password_hash is None:
        _password_hash = auth.get_password_hash(PASSWORD)
    return _password_hash


class FakeProcessor:
    """In-memory stand-in for StripeProcessor."""

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.fail_create = False
        self.fail_refund = False

    def create_intent(self, amount_cents, currency, metadata, description):
        if self.fail_create:
            raise ProcessorError("Payment creation failed: Your card was declined.")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "clientSecret": f"{intent_id}_secret",
            "status": "requires_payment_method",
            "card": None,
            "failureCode": None,
            "failureMessage": None,
            "amount": amount_cents,
            "currency": currency,
            "metadata": metadata,
        }
        return dict(self.intents[intent_id])

    def retrieve_intent(self, intent_id):
        return dict(self.intents[intent_id])

    def set_status(self, intent_id, status, card=None):
        self.intents[intent_id]["status"] = status
        self.intents[intent_id]["card"] = card

    def create_refund(self, intent_id, amount_cents, reason, metadata):
        if self.fail_refund:
            raise ProcessorError("Refund processing failed: charge already refunded")
        refund = {"id": f"re_test_{len(self.refunds) + 1}", "intent": intent_id,
                  "amount": amount_cents, "reason": reason, "status": "succeeded"}
        self.refunds.append(refund)
        return {"id": refund["id"], "status": refund["status"]}

    def construct_event(self, payload, signature):
        if signature != "valid-signature":
            raise InvalidInput("Webhook Error: No signatures found matching the expected signature")
        event = json.loads(payload)
        return {"id": event["id"], "type": event["type"], "object": event["data"]["object"]}


@pytest.fixture(autouse=True)
def db():
    # Own MonkeyPatch so tests calling monkeypatch.undo() keep the test database.
    mp = pytest.MonkeyPatch()
    test_db = mongomock.MongoClient()["storefront_test"]
    mp.setattr(database, "db", test_db)
    database.ensure_indexes()
    yield test_db
    mp.undo()


@pytest.fixture
def processor():
    fake = FakeProcessor()
    app.dependency_overrides[get_processor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_processor, None)


@pytest.fixture
def client(processor):
    return TestClient(app)


def _make_user(name, email, role):
    user_id = database.create_document("user", {
        "name": name,
        "email": email,
        "password_hash": password_hash(),
        "role": role,
        "photo": None,
    })
    return database.collection("user").find_one({"_id": database.oid(user_id)})


@pytest.fixture
def user():
    return _make_user("Jane Shopper", "jane@example.com", "user")


@pytest.fixture
def other_user():
    return _make_user("Sam Other", "sam@example.com", "user")


@pytest.fixture
def admin():
    return _make_user("Ada Admin", "ada@example.com", "admin")


@pytest.fixture
def superadmin():
    return _make_user("Root", "root@example.com", "superadmin")


def headers_for(user):
    return {"Authorization": f"Bearer {auth.create_access_token({'sub': user['email']})}"}


@pytest.fixture
def make_product():
    counter = {"n": 0}

    def factory(price=20.0, stock=5, **extra):
        counter["n"] += 1
        data = {
            "name": extra.pop("name", f"Linen Shirt {counter['n']}"),
            "description": "A shirt",
            "price": price,
            "stock": stock,
        }
        data.update(extra)
        return catalog.create_product(data)

    return factory


def stock_of(product):
    return database.collection("product").find_one({"_id": product["_id"]})["stock"]
