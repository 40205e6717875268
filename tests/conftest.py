from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Services
from main import create_app


class FakeGateway:
    def __init__(self):
        self.calls = []

    def create_payment_intent(self, amount, metadata=None):
        self.calls.append({"amount": amount, "metadata": metadata})
        return {"client_secret": "pi_secret_test", "id": f"pi_test_{len(self.calls)}"}


@pytest.fixture
def db():
    return mongomock.MongoClient()["stackvault_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    app = create_app(Services(db=db, payments=gateway))
    with TestClient(app) as c:
        yield c


def iso_in(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def make_user(client, email="a@example.com", **fields):
    res = client.post("/users", json={"email": email, "name": fields.pop("name", "Ada"), **fields})
    assert res.status_code in (200, 201), res.text
    return res.json()["user"]


def product_payload(email="a@example.com", name="Widget", **fields):
    return {
        "name": name,
        "image": "https://img.example.com/widget.png",
        "description": f"{name} does things",
        "tags": fields.pop("tags", ["tools"]),
        "owner": {"name": "Ada", "email": email, "photo": ""},
        **fields,
    }


def make_product(client, email="a@example.com", name="Widget", **fields):
    res = client.post("/products", json=product_payload(email, name, **fields))
    assert res.status_code == 201, res.text
    return res.json()["productId"]


def upgrade(client, email="a@example.com", amount=9.99):
    res = client.post("/payments", json={"email": email, "amount": amount, "transactionId": "pi_123"})
    assert res.status_code == 200, res.text
    return res.json()
