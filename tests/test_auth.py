from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from conftest import PASSWORD, auth
from database import utcnow
from security import create_access_token, decode_token

REGISTRATION = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "Ada@Example.com",
    "password": "Secret123",
    "confirm_password": "Secret123",
    "gdpr_consent": True,
}


def test_register_creates_user_and_sends_verification(client, db):
    with patch("email_service.send_verification_email", return_value=(True, None)) as send:
        res = client.post("/api/auth/register", json=REGISTRATION)
    assert res.status_code == 201
    body = res.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "ada@example.com"
    assert "password_hash" not in body["user"]
    assert "email_verification_token" not in body["user"]

    stored = db["user"].find_one({"email": "ada@example.com"})
    assert stored["role"] == "user"
    assert stored["is_email_verified"] is False
    assert stored["gdpr"]["data_processing_consent"] is True
    assert stored["email_verification_token"]
    send.assert_called_once()


def test_register_rejects_duplicate_email(client, make_user):
    make_user(email="ada@example.com")
    res = client.post("/api/auth/register", json=REGISTRATION)
    assert res.status_code == 400
    assert res.json()["detail"] == "Email already registered"


def test_register_requires_gdpr_consent(client):
    res = client.post("/api/auth/register", json={**REGISTRATION, "gdpr_consent": False})
    assert res.status_code == 400


@pytest.mark.parametrize(
    "password, confirm",
    [("short1A", "short1A"), ("alllowercase1", "alllowercase1"), ("Secret123", "Secret124")],
)
def test_register_validates_password(client, password, confirm):
    res = client.post("/api/auth/register", json={**REGISTRATION, "password": password, "confirm_password": confirm})
    assert res.status_code == 422


def test_login_returns_token_and_records_last_login(client, db, user):
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 200
    payload = decode_token(res.json()["access_token"])
    assert payload["sub"] == str(user["_id"])
    assert payload["role"] == "user"
    assert db["user"].find_one({"_id": user["_id"]})["last_login"] is not None


def test_login_with_wrong_password(client, user):
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "Nope12345"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid email or password"


def test_login_disabled_account(client, make_user):
    disabled = make_user(is_active=False)
    res = client.post("/api/auth/login", json={"email": disabled["email"], "password": PASSWORD})
    assert res.status_code == 403


def test_me_requires_token(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.json()["detail"] == "Not authenticated"


def test_me_returns_public_profile(client, user, user_headers):
    res = client.get("/api/auth/me", headers=user_headers)
    assert res.status_code == 200
    assert res.json()["id"] == str(user["_id"])
    assert "password_hash" not in res.json()


def test_expired_token_is_rejected(client, user):
    token = create_access_token(user, expires_delta=timedelta(seconds=-5))
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Session expired, please log in again"


def test_decode_token_rejects_garbage():
    with pytest.raises(HTTPException) as exc:
        decode_token("not-a-jwt")
    assert exc.value.status_code == 401


def test_token_of_deactivated_user_is_rejected(client, make_user):
    gone = make_user(is_active=False)
    res = client.get("/api/auth/me", headers=auth(gone))
    assert res.status_code == 401
    assert res.json()["detail"] == "Account disabled"


def test_admin_routes_require_admin_role(client, user_headers, admin_headers):
    assert client.get("/api/admin/users", headers=user_headers).status_code == 403
    assert client.get("/api/admin/users", headers=admin_headers).status_code == 200


def test_verify_email_flow(client, db, make_user):
    pending = make_user(
        is_email_verified=False,
        email_verification_token="tok-123",
        email_verification_expires=utcnow() + timedelta(hours=1),
    )
    with patch("email_service.send_welcome_email", return_value=(True, None)):
        res = client.post("/api/auth/verify-email", json={"token": "tok-123"})
    assert res.status_code == 200
    stored = db["user"].find_one({"_id": pending["_id"]})
    assert stored["is_email_verified"] is True
    assert "email_verification_token" not in stored


def test_verify_email_rejects_expired_token(client, make_user):
    make_user(
        is_email_verified=False,
        email_verification_token="old",
        email_verification_expires=utcnow() - timedelta(minutes=1),
    )
    res = client.post("/api/auth/verify-email", json={"token": "old"})
    assert res.status_code == 400


def test_forgot_and_reset_password(client, db, user):
    with patch("email_service.send_password_reset_email", return_value=(True, None)) as send:
        res = client.post("/api/auth/forgot-password", json={"email": user["email"]})
    assert res.status_code == 200
    token = send.call_args[0][1]

    res = client.post(
        "/api/auth/reset-password",
        json={"token": token, "password": "Brandnew42", "confirm_password": "Brandnew42"},
    )
    assert res.status_code == 200
    assert "password_reset_token" not in db["user"].find_one({"_id": user["_id"]})

    res = client.post("/api/auth/login", json={"email": user["email"], "password": "Brandnew42"})
    assert res.status_code == 200


def test_forgot_password_does_not_reveal_unknown_email(client):
    res = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert res.status_code == 200


def test_change_password_checks_current(client, user_headers):
    res = client.post(
        "/api/auth/change-password",
        headers=user_headers,
        json={"current_password": "Wrong1234", "new_password": "Another12", "confirm_password": "Another12"},
    )
    assert res.status_code == 400

    res = client.post(
        "/api/auth/change-password",
        headers=user_headers,
        json={"current_password": PASSWORD, "new_password": "Another12", "confirm_password": "Another12"},
    )
    assert res.status_code == 200


def test_addresses_keep_one_default_per_type(client, user_headers):
    address = {"street": "1 avenue Foch", "city": "Lyon", "postal_code": "69006", "type": "shipping", "is_default": True}
    client.post("/api/auth/addresses", headers=user_headers, json=address)
    res = client.post("/api/auth/addresses", headers=user_headers, json={**address, "street": "2 avenue Foch"})
    assert res.status_code == 201
    addresses = res.json()["addresses"]
    assert [a["is_default"] for a in addresses] == [False, True]

    res = client.delete(f"/api/auth/addresses/{addresses[0]['address_id']}", headers=user_headers)
    assert res.status_code == 200
    assert len(res.json()["addresses"]) == 1
    assert client.delete("/api/auth/addresses/missing", headers=user_headers).status_code == 404


def test_profile_update(client, user_headers):
    res = client.put("/api/auth/profile", headers=user_headers, json={"first_name": "Grace", "marketing_consent": True})
    assert res.status_code == 200
    assert res.json()["first_name"] == "Grace"
    assert res.json()["gdpr"]["marketing_consent"] is True


def test_data_export_contains_orders(client, db, user, user_headers):
    db["order"].insert_one({"user_id": str(user["_id"]), "order_number": "SPK2026010001", "created_at": utcnow()})
    res = client.get("/api/auth/export", headers=user_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["email"] == user["email"]
    assert [o["order_number"] for o in body["orders"]] == ["SPK2026010001"]
