from datetime import timedelta
from unittest.mock import MagicMock, patch

from bson import ObjectId

import order_service
from conftest import ADDRESS, PASSWORD
from database import utcnow


def test_list_users_search_and_filter(client, admin_headers, make_user):
    make_user(first_name="Grace", email="grace@example.com")
    make_user(is_active=False)

    res = client.get("/api/admin/users", headers=admin_headers, params={"search": "grace"})
    assert [u["email"] for u in res.json()["items"]] == ["grace@example.com"]

    res = client.get("/api/admin/users", headers=admin_headers, params={"is_active": False})
    assert res.json()["total"] == 1
    assert "password_hash" not in res.json()["items"][0]


def test_get_user_includes_order_summary(client, db, user, admin_headers):
    db["order"].insert_one({"user_id": str(user["_id"]), "order_number": "SPK2026030001", "created_at": utcnow()})
    res = client.get(f"/api/admin/users/{user['_id']}", headers=admin_headers)
    assert res.json()["order_count"] == 1
    assert client.get(f"/api/admin/users/{ObjectId()}", headers=admin_headers).status_code == 404


def test_create_user(client, db, admin_headers):
    payload = {"first_name": "Linus", "last_name": "Torvalds", "email": "Linus@Example.com", "password": "Kernel123"}
    res = client.post("/api/admin/users", headers=admin_headers, json=payload)
    assert res.status_code == 201
    assert res.json()["email"] == "linus@example.com"
    assert res.json()["is_email_verified"] is True

    login = client.post("/api/auth/login", json={"email": "linus@example.com", "password": "Kernel123"})
    assert login.status_code == 200
    assert client.post("/api/admin/users", headers=admin_headers, json=payload).status_code == 400


def test_update_user_role(client, user, admin_headers):
    res = client.put(f"/api/admin/users/{user['_id']}", headers=admin_headers, json={"role": "admin"})
    assert res.json()["role"] == "admin"
    assert client.put(f"/api/admin/users/{user['_id']}", headers=admin_headers, json={}).status_code == 400


def test_admin_cannot_demote_or_delete_self(client, admin, admin_headers):
    res = client.put(f"/api/admin/users/{admin['_id']}", headers=admin_headers, json={"role": "user"})
    assert res.status_code == 400
    assert client.delete(f"/api/admin/users/{admin['_id']}", headers=admin_headers).status_code == 400


def test_deactivated_user_cannot_log_in(client, user, admin_headers):
    assert client.delete(f"/api/admin/users/{user['_id']}", headers=admin_headers).json() == {"ok": True}
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 403


def test_admin_password_reset_sends_email(client, db, user, admin_headers):
    with patch("email_service.send_password_reset_email", return_value=(True, None)) as send:
        res = client.post(f"/api/admin/users/{user['_id']}/reset-password", headers=admin_headers)
    assert res.json()["email_sent"] is True
    stored = db["user"].find_one({"_id": user["_id"]})
    assert send.call_args[0][1] == stored["password_reset_token"]


def test_admin_product_listing_includes_inactive(client, admin_headers, make_product):
    make_product(is_active=False)
    make_product()
    assert client.get("/api/admin/products", headers=admin_headers).json()["total"] == 2
    res = client.get("/api/admin/products", headers=admin_headers, params={"is_active": False})
    assert res.json()["total"] == 1


def test_low_stock_with_threshold(client, admin_headers, make_product):
    make_product(name="Almost gone", stock=1)
    make_product(name="Plenty", stock=50)
    res = client.get("/api/admin/products/low-stock", headers=admin_headers, params={"threshold": 3})
    assert [p["name"] for p in res.json()["items"]] == ["Almost gone"]


def test_orders_listing_and_stats(client, db, user, admin_headers):
    now = utcnow()
    db["order"].insert_many([
        {"order_number": "SPK2026030001", "user_id": str(user["_id"]), "status": "paid", "payment_status": "paid",
         "total": 50.0, "created_at": now},
        {"order_number": "SPK2026030002", "user_id": str(user["_id"]), "status": "pending", "payment_status": "pending",
         "total": 20.0, "created_at": now},
        {"order_number": "SPK2026030003", "user_id": str(user["_id"]), "status": "cancelled", "payment_status": "pending",
         "total": 99.0, "created_at": now},
    ])

    res = client.get("/api/admin/orders", headers=admin_headers, params={"status": "pending"})
    assert [o["order_number"] for o in res.json()["items"]] == ["SPK2026030002"]
    res = client.get("/api/admin/orders", headers=admin_headers, params={"search": "0003"})
    assert res.json()["total"] == 1

    stats = client.get("/api/admin/orders/stats", headers=admin_headers).json()
    assert stats["total_orders"] == 3
    assert stats["total_revenue"] == 50.0
    assert stats["by_status"]["cancelled"]["count"] == 1


def test_order_detail_embeds_customer(client, db, user, admin_headers):
    order_id = db["order"].insert_one({"order_number": "SPK2026030009", "user_id": str(user["_id"])}).inserted_id
    res = client.get(f"/api/admin/orders/{order_id}", headers=admin_headers)
    assert res.json()["customer"]["email"] == user["email"]


def test_status_update_notifies_customer(client, db, user, admin_headers):
    order_id = db["order"].insert_one({
        "order_number": "SPK2026030010", "user_id": str(user["_id"]), "status": "paid",
        "payment_status": "paid", "items": [], "total": 10.0,
    }).inserted_id
    with patch("email_service.send_order_status_update", return_value=(True, None)) as send:
        res = client.put(f"/api/admin/orders/{order_id}/status", headers=admin_headers, json={"status": "processing"})
    assert res.status_code == 200
    send.assert_called_once()

    with patch("email_service.send_order_status_update") as send:
        client.put(f"/api/admin/orders/{order_id}/status", headers=admin_headers, json={"status": "cancelled", "notify": False})
    send.assert_not_called()


def test_coupons(client, admin_headers):
    res = client.post("/api/admin/coupons", headers=admin_headers, json={"code": "spring", "type": "percent", "value": 15})
    assert res.status_code == 201
    assert res.json()["code"] == "SPRING"

    res = client.post("/api/admin/coupons", headers=admin_headers, json={"code": "HUGE", "type": "percent", "value": 150})
    assert res.status_code == 400
    assert [c["code"] for c in client.get("/api/admin/coupons", headers=admin_headers).json()["items"]] == ["SPRING"]


def test_dashboard_requires_admin(client, user_headers):
    assert client.get("/api/admin/dashboard", headers=user_headers).status_code == 403


def test_anonymize_order_keeps_country(db):
    order = {
        "_id": ObjectId(),
        "billing_address": {**ADDRESS, "country": "Belgium"},
        "shipping_address": ADDRESS,
        "notes": "Ring twice",
        "gdpr": {"data_retention_until": utcnow() - timedelta(days=1)},
    }
    db["order"].insert_one(order)
    anonymized = order_service.anonymize_order(db, order)
    assert anonymized["billing_address"] == {
        "street": "ANONYMIZED", "city": "ANONYMIZED", "postal_code": "00000", "country": "Belgium",
    }
    assert anonymized["shipping_address"]["country"] == "France"
    assert anonymized["notes"] is None
    assert anonymized["gdpr"]["anonymized_at"] is not None


def test_anonymize_expired_orders_skips_already_anonymized():
    expired = {"_id": ObjectId(), "billing_address": ADDRESS, "shipping_address": ADDRESS}
    orders = MagicMock()
    orders.find.return_value = [expired]
    now = utcnow()

    assert order_service.anonymize_expired_orders({"order": orders}, now) == 1
    query = orders.find.call_args[0][0]
    assert query == {"gdpr.data_retention_until": {"$lt": now}, "gdpr.anonymized_at": {"$exists": False}}
    fields = orders.update_one.call_args[0][1]["$set"]
    assert fields["shipping_address"]["street"] == "ANONYMIZED"
    assert fields["gdpr.anonymized_at"] == now


def _stored_order(db, **overrides):
    order = {
        "order_number": f"SPK202604{ObjectId()}",
        "user_id": str(ObjectId()),
        "items": [{"product_id": str(ObjectId()), "name": "Cable", "price": 30.0, "quantity": 2}],
        "subtotal": 60.0,
        "shipping_cost": 10.0,
        "tax": 12.0,
        "discount": 0.0,
        "total": 82.0,
        "status": "pending",
        "payment_status": "pending",
        "billing_address": ADDRESS,
        "shipping_address": ADDRESS,
        "created_at": utcnow(),
    }
    order.update(overrides)
    order["_id"] = db["order"].insert_one(order).inserted_id
    return order


def test_adjust_fees_recomputes_total(client, db, admin_headers):
    order = _stored_order(db)
    url = f"/api/admin/orders/{order['_id']}/fees"

    res = client.put(url, headers=admin_headers, json={"shipping_cost": 0, "discount": 5})
    assert res.status_code == 200
    assert res.json()["subtotal"] == 60.0
    assert res.json()["total"] == 67.0
    assert db["order"].find_one({"_id": order["_id"]})["total"] == 67.0

    res = client.put(url, headers=admin_headers, json={"discount": 100})
    assert res.status_code == 400
    assert res.json()["subtotal"] == 60.0
    assert client.put(url, headers=admin_headers, json={}).status_code == 400


def test_fees_are_frozen_once_paid(client, db, admin_headers):
    order = _stored_order(db, status="paid", payment_status="paid")
    res = client.put(f"/api/admin/orders/{order['_id']}/fees", headers=admin_headers, json={"tax": 0})
    assert res.status_code == 400
    assert res.json()["current_status"] == "paid"


def test_anonymize_single_finished_order(client, db, admin_headers):
    open_order = _stored_order(db)
    res = client.post(f"/api/admin/orders/{open_order['_id']}/anonymize", headers=admin_headers)
    assert res.status_code == 400

    done = _stored_order(db, status="delivered", payment_status="paid", notes="Ring twice")
    res = client.post(f"/api/admin/orders/{done['_id']}/anonymize", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["billing_address"]["street"] == "ANONYMIZED"
    assert res.json()["billing_address"]["country"] == "France"
    assert res.json()["notes"] is None
