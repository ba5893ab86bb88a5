from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import date

from fastapi.testclient import TestClient

from dulu.config import Settings
from dulu.db import SessionLocal
from dulu.main import app
from dulu.models import PaymentWebhook
from tests.utils.factories import (
    load_payment,
    load_user,
    make_payment,
    make_user,
    user_transactions,
)

settings = Settings()


def _callback(deposit_id: str, status: str = "COMPLETED", **extra) -> dict:
    return {
        "depositId": deposit_id,
        "status": status,
        "depositedAmount": "2000",
        "currency": "XAF",
        "correspondent": "ORANGE_CMR",
        "created": "2026-01-05T10:00:00Z",
        **extra,
    }


def _webhook_rows(deposit_id: str) -> list[PaymentWebhook]:
    with SessionLocal() as db:
        return db.query(PaymentWebhook).filter_by(deposit_id=deposit_id).all()


def test_webhook_forbidden_ip(caplog):
    bad_ip = "10.0.0.1"
    with TestClient(app, client=(bad_ip, 5000)) as client, caplog.at_level(
        logging.WARNING
    ):
        resp = client.post("/v1/payments/webhook", json=_callback("dep-x"))
    assert resp.status_code == 403
    assert f"forbidden ip {bad_ip}" in caplog.text


def test_webhook_x_forwarded_for_from_trusted_proxy(client):
    user_id = make_user()
    deposit_id = make_payment(user_id)
    resp = client.post(
        "/v1/payments/webhook",
        json=_callback(deposit_id),
        headers={"X-Forwarded-For": "10.0.0.1"},
    )
    assert resp.status_code == 403
    assert load_payment(deposit_id).status == "processing"


def test_webhook_completes_payment(client):
    user_id = make_user()
    deposit_id = make_payment(user_id)
    resp = client.post("/v1/payments/webhook", json=_callback(deposit_id))
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["newStatus"] == "completed"
    assert data["applied"] is True
    assert data["userSubscriptionUpdated"] is True

    payment = load_payment(deposit_id)
    assert payment.status == "completed"
    assert payment.meta["deposited_amount"] == "2000"
    assert payment.meta["webhook_payload"]["depositId"] == deposit_id
    assert load_user(user_id).subscription_level == "pro"
    assert len(_webhook_rows(deposit_id)) == 1


def test_duplicate_webhook_is_idempotent(client):
    user_id = make_user()
    deposit_id = make_payment(user_id)
    first = client.post("/v1/payments/webhook", json=_callback(deposit_id))
    end_date = load_user(user_id).subscription_end_date
    second = client.post("/v1/payments/webhook", json=_callback(deposit_id))

    assert first.status_code == second.status_code == 200
    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert second.json()["userSubscriptionUpdated"] is False
    assert load_user(user_id).subscription_end_date == end_date
    assert len(user_transactions(user_id)) == 1
    assert len(_webhook_rows(deposit_id)) == 2


def test_webhook_then_poll_extends_once(client, pawapay):
    user_id = make_user()
    deposit_id = make_payment(user_id)
    assert client.post("/v1/payments/webhook", json=_callback(deposit_id)).status_code == 200
    end_date = load_user(user_id).subscription_end_date

    pawapay.set_status(deposit_id, "COMPLETED")
    resp = client.post(
        "/v1/payments/status",
        headers={"X-API-Key": settings.api_key, "X-API-Ver": "v1", "X-User-ID": user_id},
        json={"depositId": deposit_id},
    )
    assert resp.status_code == 200
    assert resp.json()["userSubscriptionUpdated"] is False
    assert load_user(user_id).subscription_end_date == end_date
    assert len(user_transactions(user_id)) == 1


def test_webhook_extension_of_lapsed_subscription(client):
    user_id = make_user(subscription_end_date=date(2025, 1, 10), level="pro")
    deposit_id = make_payment(user_id, is_extension=True)
    resp = client.post("/v1/payments/webhook", json=_callback(deposit_id))
    assert resp.status_code == 200
    assert load_user(user_id).subscription_end_date == date(2025, 2, 10)


def test_webhook_failed_status(client):
    user_id = make_user()
    deposit_id = make_payment(user_id)
    resp = client.post(
        "/v1/payments/webhook",
        json=_callback(
            deposit_id,
            "FAILED",
            rejectionReason={"rejectionCode": "OTHER_ERROR", "rejectionMessage": "Declined"},
        ),
    )
    assert resp.status_code == 200
    assert resp.json()["newStatus"] == "failed"
    payment = load_payment(deposit_id)
    assert payment.status == "failed"
    assert payment.meta["rejection_reason"]["rejectionMessage"] == "Declined"
    assert load_user(user_id).subscription_level == "free"


def test_webhook_unknown_status_changes_nothing(client):
    user_id = make_user()
    deposit_id = make_payment(user_id, status="pending")
    resp = client.post("/v1/payments/webhook", json=_callback(deposit_id, "SUBMITTED"))
    assert resp.status_code == 200
    assert resp.json()["applied"] is False
    assert load_payment(deposit_id).status == "pending"


def test_webhook_unknown_deposit(client):
    resp = client.post("/v1/payments/webhook", json=_callback("does-not-exist"))
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "NOT_FOUND"


def test_webhook_malformed_body(client):
    resp = client.post(
        "/v1/payments/webhook",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert client.post("/v1/payments/webhook", json=["x"]).status_code == 400
    assert client.post("/v1/payments/webhook", json={"status": "COMPLETED"}).status_code == 400


def test_webhook_signature_required_when_secure(client, monkeypatch):
    monkeypatch.setenv("SECURE_WEBHOOK", "true")
    user_id = make_user()
    deposit_id = make_payment(user_id)
    body = json.dumps(_callback(deposit_id)).encode()

    resp = client.post(
        "/v1/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Signature": "bad"},
    )
    assert resp.status_code == 403
    assert load_payment(deposit_id).status == "processing"

    signature = hmac.new(settings.hmac_secret.encode(), body, hashlib.sha256).hexdigest()
    resp = client.post(
        "/v1/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Signature": signature},
    )
    assert resp.status_code == 200
    assert load_payment(deposit_id).status == "completed"
