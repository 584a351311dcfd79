import csv
import io
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import analytics_queries as aq
from database import get_db
from errors import ShopError
from main import app
from security import require_admin

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_db():
    fake = MagicMock()
    app.dependency_overrides[get_db] = lambda: fake
    app.dependency_overrides[require_admin] = lambda: {"_id": "admin", "email": "admin@example.com", "role": "admin"}
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def analytics_client(fake_db):
    return TestClient(app)


def test_resolve_date_range():
    start, end = aq.resolve_date_range("7d", now=NOW)
    assert (start, end) == (NOW - timedelta(days=7), NOW)
    start, _ = aq.resolve_date_range("month", now=NOW)
    assert start == NOW - timedelta(days=360)
    start, _ = aq.resolve_date_range(None, now=NOW)
    assert start == NOW - timedelta(days=30)

    naive = datetime(2026, 3, 1)
    start, _ = aq.resolve_date_range("7d", start=naive, now=NOW)
    assert start.tzinfo is timezone.utc

    with pytest.raises(ShopError):
        aq.resolve_date_range(start=NOW, end=NOW - timedelta(days=1))


def test_previous_range_has_same_length():
    start = NOW - timedelta(days=30)
    assert aq.previous_range(start, NOW) == (start - timedelta(days=30), start)


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (150, 100, {"value": 50.0, "type": "positive"}),
        (50, 100, {"value": -50.0, "type": "negative"}),
        (100, 100, {"value": 0.0, "type": "neutral"}),
        (10, 0, {"value": 100.0, "type": "positive"}),
        (0, 0, {"value": 0.0, "type": "neutral"}),
    ],
)
def test_percent_change(current, previous, expected):
    assert aq.percent_change(current, previous) == expected


def test_bucket_labels_cover_range():
    start = datetime(2026, 1, 30, tzinfo=timezone.utc)
    end = datetime(2026, 3, 2, tzinfo=timezone.utc)
    assert aq.bucket_labels(start, end, "month") == ["2026-01", "2026-02", "2026-03"]
    assert aq.bucket_labels(start, start + timedelta(hours=2), "hour") == [
        "2026-01-30T00", "2026-01-30T01", "2026-01-30T02",
    ]
    assert aq.bucket_labels(datetime(2025, 12, 29, tzinfo=timezone.utc), datetime(2026, 1, 5, tzinfo=timezone.utc), "week") == [
        "2026-W01", "2026-W02",
    ]


def test_fill_buckets_zero_fills_missing_labels():
    rows = [{"_id": "2026-03-02", "revenue": 150.0, "orders": 2}]
    filled = aq.fill_buckets(rows, ["2026-03-01", "2026-03-02"], ["revenue", "orders"])
    assert filled == [
        {"label": "2026-03-01", "revenue": 0, "orders": 0},
        {"label": "2026-03-02", "revenue": 150.0, "orders": 2},
    ]


def test_fill_hours_and_breakdown_shares():
    hours = aq.fill_hours([{"_id": 9, "orders": 3, "revenue": 90.0}])
    assert len(hours) == 24
    assert hours[9] == {"hour": 9, "orders": 3, "revenue": 90.0}

    shares = aq.shape_breakdown([{"_id": "stripe", "orders": 3, "revenue": 300.0}, {"_id": "paypal", "orders": 1, "revenue": 50.0}], "method")
    assert [s["share"] for s in shares] == [75.0, 25.0]
    assert aq.shape_breakdown([], "method") == []


def test_shape_timeline_counts_statuses():
    rows = [{"_id": "2026-03-01", "total_orders": 3, "total_revenue": 90.0, "average_order_value": 30.0,
             "statuses": ["paid", "paid", "cancelled"]}]
    timeline = aq.shape_timeline(rows, ["2026-03-01", "2026-03-02"])
    assert timeline[0]["status_breakdown"] == {"paid": 2, "cancelled": 1}
    assert timeline[1]["total_orders"] == 0


def test_category_info_and_pipelines():
    rows = aq.with_category_info([{"category": "cables", "total_revenue": 12.345, "total_quantity": 3, "order_count": 2}])
    assert rows[0]["name"] == "Cables"
    assert rows[0]["total_revenue"] == 12.35
    assert aq.revenue_match(None, None) == {"status": {"$in": ["paid", "processing", "shipped", "delivered"]}}
    assert aq.top_products_pipeline({}, 5, "revenue")[3] == {"$sort": {"total_revenue": -1}}
    group = aq.revenue_pipeline(NOW, NOW, "week")[1]["$group"]
    assert group["_id"]["$dateToString"]["format"] == "%G-W%V"


def test_revenue_route_zero_fills(analytics_client, fake_db):
    fake_db["order"].aggregate.return_value = [
        {"_id": "2026-03-02", "revenue": 150.0, "orders": 2, "average_order_value": 75.0},
    ]
    res = analytics_client.get(
        "/api/analytics/revenue",
        params={"period": "day", "start_date": "2026-03-01T00:00:00Z", "end_date": "2026-03-03T00:00:00Z"},
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert [d["label"] for d in data] == ["2026-03-01", "2026-03-02", "2026-03-03"]
    assert [d["revenue"] for d in data] == [0, 150.0, 0]


def test_revenue_route_rejects_inverted_range(analytics_client):
    res = analytics_client.get(
        "/api/analytics/revenue",
        params={"start_date": "2026-03-05T00:00:00Z", "end_date": "2026-03-01T00:00:00Z"},
    )
    assert res.status_code == 400


def test_overview_compares_with_previous_period(analytics_client, fake_db):
    fake_db["order"].aggregate.side_effect = [
        [{"_id": None, "revenue": 200.0, "orders": 4, "average_order_value": 50.0}],
        [],
    ]
    fake_db["user"].count_documents.return_value = 3
    body = analytics_client.get("/api/analytics/overview", params={"period": "7d"}).json()
    assert body["metrics"]["revenue"] == 200.0
    assert body["previous"]["revenue"] == 0.0
    assert body["changes"]["revenue"] == {"value": 100.0, "type": "positive"}
    assert body["changes"]["customers"]["type"] == "neutral"


def test_customer_metrics(analytics_client, fake_db):
    fake_db["order"].count_documents.side_effect = [5, 3, 1]
    fake_db["order"].distinct.return_value = ["a", "b"]
    fake_db["order"].aggregate.side_effect = [
        [{"_id": None, "average_value": 42.5, "carts": 3}],
        [{"_id": "guest", "orders": 2, "total_spent": 80.0, "last_order": None}],
    ]
    body = analytics_client.get("/api/analytics/customer-metrics").json()
    assert body["new_customers"] == 5
    assert body["active_customers"] == 2
    assert body["average_cart_value"] == 42.5
    assert body["conversion_rate"] == 25.0
    assert body["top_customers"][0]["total_spent"] == 80.0


def test_hourly_and_payment_methods(analytics_client, fake_db):
    fake_db["order"].aggregate.return_value = [{"_id": 14, "orders": 2, "revenue": 40.0}]
    assert len(analytics_client.get("/api/analytics/hourly").json()["data"]) == 24

    fake_db["order"].aggregate.return_value = [{"_id": "stripe", "orders": 2, "revenue": 40.0}]
    data = analytics_client.get("/api/analytics/payment-methods").json()["data"]
    assert data == [{"method": "stripe", "orders": 2, "revenue": 40.0, "share": 100.0}]


def test_analytics_require_admin(client, user_headers):
    assert client.get("/api/analytics/overview", headers=user_headers).status_code == 403


def _rows(text):
    return list(csv.reader(io.StringIO(text)))


def test_export_products_csv(client, admin_headers, make_product):
    make_product(name="Braided Cable", brand="Ugreen", category="cables", price=9.5)
    make_product(name="Hidden", is_active=False)
    res = client.get("/api/analytics/export", headers=admin_headers, params={"type": "products"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert res.headers["content-disposition"].startswith('attachment; filename="products-')
    rows = _rows(res.text)
    assert rows[0] == ["name", "brand", "category", "price", "stock", "total_sold"]
    assert rows[1] == ["Braided Cable", "Ugreen", "cables", "9.50", "10", "0"]
    assert len(rows) == 2


def test_export_customers_csv(client, admin, admin_headers, make_user):
    make_user(email="grace@example.com")
    res = client.get("/api/analytics/export", headers=admin_headers, params={"type": "customers"})
    emails = {row[2] for row in _rows(res.text)[1:]}
    assert emails == {"admin@example.com", "grace@example.com"}


def test_export_rejects_unknown_type(client, admin_headers, db):
    assert client.get("/api/analytics/export", headers=admin_headers, params={"type": "secrets"}).status_code == 422
    with pytest.raises(ShopError):
        aq.export_csv(db, "secrets", None, None)
