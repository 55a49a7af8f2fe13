import hashlib
import hmac
import json
import time

import pytest
from bson import ObjectId

import config
import payments
from conftest import order_payload

SECRET = "whsec_test"


def sign(payload: bytes, secret=SECRET, timestamp=None):
    timestamp = str(timestamp or int(time.time()))
    digest = hmac.new(secret.encode(), timestamp.encode() + b"." + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def place_order(client, user, make_product):
    res = client.post("/api/orders", json=order_payload((make_product(price=1000), 1)), headers=user["headers"])
    return res.json()["data"]


def event(kind, intent_id, order_id=None):
    return json.dumps({
        "id": "evt_1",
        "type": kind,
        "data": {"object": {"id": intent_id, "metadata": {"order_id": order_id} if order_id else {}}},
    }).encode()


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode()
        self.text = self.content.decode()
        self.reason = "Error"

    def json(self):
        return self._body


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", SECRET)


def test_signature_verification():
    payload = b'{"type": "ping"}'

    payments.verify_stripe_signature(payload, sign(payload), SECRET)
    with pytest.raises(ValueError):
        payments.verify_stripe_signature(payload, sign(payload, secret="other"), SECRET)
    with pytest.raises(ValueError):
        payments.verify_stripe_signature(payload, sign(payload, timestamp=int(time.time()) - 3600), SECRET)
    with pytest.raises(ValueError):
        payments.verify_stripe_signature(payload, "garbage", SECRET)


def test_create_intent_without_stripe_keys(client, user, make_product, db, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", None)
    order = place_order(client, user, make_product)

    res = client.post("/api/payments/create-intent", json={"orderId": order["id"]}, headers=user["headers"])

    assert res.status_code == 200
    intent = res.json()["data"]
    assert intent["id"].startswith("pi_dummy_")
    assert intent["amount"] == int(round(order["total"] * 100))
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment_intent_id"] == intent["id"]


def test_create_intent_calls_stripe(client, user, make_product, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    calls = []

    def fake_request(method, url, auth=None, data=None, timeout=None):
        calls.append((method, url, data))
        return FakeResponse(200, {"id": "pi_123", "client_secret": "pi_123_secret", "amount": data["amount"],
                                  "currency": data["currency"], "status": "requires_payment_method"})

    monkeypatch.setattr(payments.requests, "request", fake_request)
    order = place_order(client, user, make_product)

    res = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=user["headers"])

    assert res.status_code == 200
    assert res.json()["data"]["client_secret"] == "pi_123_secret"
    method, url, data = calls[0]
    assert (method, url) == ("POST", f"{config.STRIPE_API_BASE}/payment_intents")
    assert data["metadata[order_id]"] == order["id"]
    assert data["amount"] == 138000


def test_stripe_errors_surface_as_bad_gateway(client, user, make_product, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(payments.requests, "request",
                        lambda *a, **kw: FakeResponse(402, {"error": {"message": "Your card was declined."}}))
    order = place_order(client, user, make_product)

    res = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=user["headers"])

    assert res.status_code == 502
    assert "declined" in res.json()["message"]


def test_create_intent_for_someone_elses_order(client, user, other_user, make_product):
    order = place_order(client, user, make_product)

    res = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=other_user["headers"])

    assert res.status_code == 403


def test_webhook_marks_order_paid(client, user, make_product, db, webhook_secret):
    order = place_order(client, user, make_product)
    payload = event("payment_intent.succeeded", "pi_42", order["id"])

    res = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})

    assert res.status_code == 200
    assert res.json() == {"received": True}
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["payment_status"] == "paid"
    assert stored["order_status"] == "processing"
    assert stored["payment_intent_id"] == "pi_42"


def test_webhook_marks_payment_failed(client, user, make_product, db, webhook_secret):
    order = place_order(client, user, make_product)
    db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"payment_intent_id": "pi_7"}})
    payload = event("payment_intent.payment_failed", "pi_7")

    client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})

    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["payment_status"] == "failed"
    assert stored["order_status"] == "pending"


def test_webhook_rejects_bad_signature(client, user, make_product, db, webhook_secret):
    order = place_order(client, user, make_product)
    payload = event("payment_intent.succeeded", "pi_42", order["id"])

    res = client.post("/api/payments/webhook", content=payload,
                      headers={"Stripe-Signature": sign(payload, secret="forged")})

    assert res.status_code == 400
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment_status"] == "pending"


def test_webhook_ignores_other_events(client, webhook_secret):
    payload = json.dumps({"type": "customer.created", "data": {"object": {"id": "cus_1"}}}).encode()

    res = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})

    assert res.status_code == 200


class HtmlResponse:
    status_code = 502
    content = b"<html><body>Bad Gateway</body></html>"
    text = content.decode()
    reason = "Bad Gateway"

    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_non_json_stripe_error_is_bad_gateway(client, user, make_product, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(payments.requests, "request", lambda *a, **kw: HtmlResponse())
    order = place_order(client, user, make_product)

    res = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=user["headers"])

    assert res.status_code == 502
    assert "Bad Gateway" in res.json()["message"]


def test_late_webhook_after_refund_is_ignored(client, user, make_product, db, webhook_secret, caplog):
    order = place_order(client, user, make_product)
    db["order"].update_one({"_id": ObjectId(order["id"])},
                           {"$set": {"payment_status": "refunded", "payment_intent_id": "pi_9"}})
    payload = event("payment_intent.payment_failed", "pi_9")

    with caplog.at_level("INFO", logger="payments"):
        res = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign(payload)})

    assert res.status_code == 200
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["payment_status"] == "refunded"
    messages = [r.getMessage() for r in caplog.records if r.name == "payments"]
    assert any("already settled" in m for m in messages)
    assert not any("payment status ->" in m for m in messages)
