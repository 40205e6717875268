from datetime import datetime

import mongomock
from fastapi.testclient import TestClient

from database import PAYMENTS, USERS, Services
from main import create_app
from tests.conftest import iso_in, make_user, product_payload


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "StackVault Server is Running"}
    health = client.get("/test").json()
    assert health["database"] == "✅ Connected & Working"
    assert health["database_name"] == "stackvault_test"
    assert health["payments"] == "✅ Configured"


def test_unconfigured_database():
    app = create_app(Services())
    with TestClient(app) as c:
        res = c.get("/users/a@example.com")
    assert res.status_code == 500
    assert res.json()["detail"] == "Database not configured"


def test_upsert_user_creates_then_updates(client, db):
    res = client.post("/users", json={"email": "a@example.com", "name": "Ada", "authProvider": "google"})
    assert res.status_code == 201
    assert res.json()["status"] == "created"
    user = res.json()["user"]
    assert user["role"] == "user"
    assert user["membership"] == {"status": "none"}
    assert user["authProvider"] == "google"
    assert "_id" not in user

    res = client.post("/users", json={"email": "a@example.com", "name": "Ada L.", "bio": "hi"})
    assert res.status_code == 200
    assert res.json()["status"] == "updated"
    assert res.json()["user"]["name"] == "Ada L."
    assert db[USERS].count_documents({"email": "a@example.com"}) == 1


def test_upsert_user_requires_email(client):
    assert client.post("/users", json={"name": "Nobody"}).status_code == 400


def test_get_user(client):
    make_user(client, "a@example.com")
    res = client.get("/users/a@example.com")
    assert res.status_code == 200
    assert res.json()["email"] == "a@example.com"
    assert client.get("/user-profile/a@example.com").json()["name"] == "Ada"
    assert client.get("/users/ghost@example.com").status_code == 404
    assert client.get("/user-profile/ghost@example.com").status_code == 404


def test_payment_intent(client, gateway):
    res = client.post("/create-payment-intent", json={"amount": 9.99, "userEmail": "a@example.com"})
    assert res.status_code == 200
    assert res.json() == {"clientSecret": "pi_secret_test", "paymentIntentId": "pi_test_1"}
    assert gateway.calls[0]["amount"] == 9.99
    assert gateway.calls[0]["metadata"]["user_email"] == "a@example.com"
    assert gateway.calls[0]["metadata"]["coupon_code"] == "none"


def test_payment_intent_with_coupon(client, gateway):
    client.post("/admin/coupons", json={
        "code": "save5", "description": "Five off", "discountAmount": 5, "expiryDate": iso_in(10),
    })
    res = client.post("/create-payment-intent", json={"amount": 4.99, "couponCode": "Save5"})
    assert res.status_code == 200
    assert gateway.calls[0]["metadata"]["coupon_code"] == "SAVE5"

    res = client.post("/create-payment-intent", json={"amount": 4.99, "couponCode": "BOGUS"})
    assert res.status_code == 404
    assert len(gateway.calls) == 1


def test_payment_intent_without_provider():
    app = create_app(Services(db=mongomock.MongoClient()["t"]))
    with TestClient(app) as c:
        res = c.post("/create-payment-intent", json={"amount": 9.99})
    assert res.status_code == 503
    assert res.json()["detail"] == "Stripe service unavailable"


def test_payment_intent_rejects_non_positive_amount(client):
    assert client.post("/create-payment-intent", json={"amount": 0}).status_code == 400


def test_record_payment_upgrades_membership(client, db):
    make_user(client, "a@example.com")
    res = client.post("/payments", json={
        "email": "a@example.com", "amount": 9.99, "transactionId": "pi_1", "membershipType": "monthly",
    })
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "success"
    assert body["userUpdated"] is True
    assert body["payment"]["status"] == "completed"

    membership = client.get("/users/a@example.com").json()["membership"]
    assert membership["status"] == "premium"
    assert membership["type"] == "monthly"
    assert membership["transactionId"] == "pi_1"
    assert membership["amount"] == 9.99
    assert db[PAYMENTS].count_documents({"email": "a@example.com"}) == 1


def test_payment_history_newest_first(client, db):
    db[PAYMENTS].insert_many([
        {"email": "a@example.com", "amount": 5, "transactionId": "pi_1", "paidAt": datetime(2025, 1, 1)},
        {"email": "a@example.com", "amount": 5, "transactionId": "pi_2", "paidAt": datetime(2025, 2, 1)},
    ])
    history = client.get("/payments/a@example.com").json()
    assert [p["transactionId"] for p in history] == ["pi_2", "pi_1"]
    assert all("_id" not in p for p in history)
    assert client.get("/payments/ghost@example.com").json() == []


def test_email_is_stored_and_found_as_sent(client, db):
    res = client.post("/users", json={"email": "Ada@Example.COM", "name": "Ada"})
    assert res.status_code == 201
    assert res.json()["user"]["email"] == "Ada@Example.COM"

    assert client.get("/users/Ada@Example.COM").status_code == 200
    assert client.get("/user-profile/Ada@Example.COM").status_code == 200

    res = client.post("/products", json=product_payload("Ada@Example.COM"))
    assert res.status_code == 201
    assert len(client.get("/products/user/Ada@Example.COM").json()) == 1
    assert client.get("/users/Ada@Example.COM/product-quota").json()["currentCount"] == 1

    client.post("/payments", json={"email": "Ada@Example.COM", "amount": 5, "transactionId": "pi_9"})
    assert len(client.get("/payments/Ada@Example.COM").json()) == 1
    assert db[USERS].count_documents({}) == 1


def test_local_addresses_are_accepted(client):
    res = client.post("/users", json={"email": "dev@localhost"})
    assert res.status_code == 201
    assert client.get("/users/dev@localhost").json()["email"] == "dev@localhost"
