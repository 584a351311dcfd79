from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pymongo.database import Database

import analytics_queries as aq
from database import get_db, utcnow
from security import require_admin

router = APIRouter(prefix="/analytics", tags=["analytics"], dependencies=[Depends(require_admin)])


@router.get("/revenue")
def revenue(
    period: Literal["day", "week", "month", "year"] = "month",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    start, end = aq.resolve_date_range(period, start_date, end_date)
    rows = db["order"].aggregate(aq.revenue_pipeline(start, end, period))
    labels = aq.bucket_labels(start, end, period)
    return {
        "data": aq.fill_buckets(rows, labels, ["revenue", "orders", "average_order_value"]),
        "period": period,
        "start_date": start,
        "end_date": end,
    }


@router.get("/sales-by-category")
def sales_by_category(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.category_pipeline(aq.revenue_match(start_date, end_date)))
    return {"data": aq.with_category_info(rows)}


@router.get("/top-products")
def top_products(
    limit: int = Query(10, ge=1, le=50),
    sort_by: Literal["quantity", "revenue"] = "quantity",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.top_products_pipeline(aq.revenue_match(start_date, end_date), limit, sort_by))
    return {"data": aq.shape_top_products(rows), "limit": limit}


@router.get("/customer-metrics")
def customer_metrics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    return aq.customer_metrics_report(db, start_date, end_date)


@router.get("/orders-timeline")
def orders_timeline(
    group_by: Literal["hour", "day", "week", "month"] = "day",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.timeline_pipeline(start_date, end_date, group_by))
    labels = None
    if start_date and end_date:
        start, end = aq.resolve_date_range(None, start_date, end_date)
        labels = aq.bucket_labels(start, end, group_by)
    return {"data": aq.shape_timeline(rows, labels), "group_by": group_by}


@router.get("/hourly")
def hourly(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.hourly_pipeline(aq.revenue_match(start_date, end_date)))
    return {"data": aq.fill_hours(rows)}


@router.get("/geographic")
def geographic(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.geographic_pipeline(aq.revenue_match(start_date, end_date)))
    return {"data": aq.shape_breakdown(rows, "country")}


@router.get("/payment-methods")
def payment_methods(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    rows = db["order"].aggregate(aq.payment_methods_pipeline(aq.revenue_match(start_date, end_date)))
    return {"data": aq.shape_breakdown(rows, "method")}


@router.get("/overview")
def overview(
    period: Literal["7d", "30d", "90d", "1y"] = "30d",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    start, end = aq.resolve_date_range(period, start_date, end_date)
    return {"period": period, "start_date": start, "end_date": end, **aq.overview_report(db, start, end)}


@router.get("/export")
def export(
    type: Literal["revenue", "products", "customers", "orders"],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Database = Depends(get_db),
):
    filename, content = aq.export_csv(db, type, start_date, end_date)
    stamped = f"{filename[:-4]}-{utcnow():%Y%m%d}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{stamped}"'},
    )
