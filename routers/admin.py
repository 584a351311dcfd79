import logging
import re
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import analytics_queries as aq
import config
import email_service
import order_service
from catalog import build_product_query, parse_sort, present_product
from database import create_document, get_db, get_documents, serialize_doc, to_object_id, utcnow
from schemas import Category, Coupon, OrderStatus, PaymentStatus, Role, User as UserSchema
from security import check_password_strength, generate_expiring_token, hash_password, public_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class UserCreate(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str
    role: Role = "user"
    is_active: bool = True

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None


class StatusInput(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=200)
    notify: bool = True


class TrackingInput(BaseModel):
    tracking_number: str = Field(..., min_length=3, max_length=50)
    carrier: Optional[str] = Field(None, max_length=50)
    tracking_url: Optional[str] = None


class FeesInput(BaseModel):
    shipping_cost: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)


def _paginate(collection, query: Dict[str, Any], sort, page: int, limit: int, present=serialize_doc) -> dict:
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
    return {
        "items": [present(d) for d in cursor],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": -(-total // limit),
    }


def _user_or_404(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _order_customer(db: Database, order: dict) -> Optional[dict]:
    if not ObjectId.is_valid(order.get("user_id") or ""):
        return None
    return db["user"].find_one({"_id": ObjectId(order["user_id"])})


# Dashboard


@router.get("/dashboard")
def dashboard(db: Database = Depends(get_db)):
    now = utcnow()
    revenue = aq.summarize(db["order"].aggregate(aq.summary_pipeline(aq.revenue_match(None, None))))
    monthly = db["order"].aggregate(aq.revenue_pipeline(now - timedelta(days=365), now, "month"))
    recent_orders = db["order"].find().sort("created_at", -1).limit(5)
    low_stock = db["product"].find({"is_active": True, "stock": {"$lte": 5}}).sort("stock", 1).limit(10)
    return {
        "stats": {
            "total_users": db["user"].count_documents({}),
            "total_products": db["product"].count_documents({"is_active": True}),
            "total_orders": db["order"].count_documents({}),
            "total_revenue": revenue["revenue"],
            "pending_orders": db["order"].count_documents({"status": "pending"}),
        },
        "charts": {
            "monthly_revenue": [
                {"month": row["_id"], "revenue": row["revenue"], "orders": row["orders"]} for row in monthly
            ],
            "sales_by_category": aq.with_category_info(
                db["order"].aggregate(aq.category_pipeline(aq.revenue_match(None, None)))
            ),
        },
        "recent_orders": [serialize_doc(o) for o in recent_orders],
        "low_stock_products": [present_product(p) for p in low_stock],
    }


# Users


@router.get("/users")
def list_users(
    search: Optional[str] = None,
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"first_name": {"$regex": pattern, "$options": "i"}},
            {"last_name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    return _paginate(db["user"], query, [("created_at", -1)], page, limit, present=public_user)


@router.get("/users/{user_id}")
def get_user(user_id: str, db: Database = Depends(get_db)):
    user = _user_or_404(db, user_id)
    orders = db["order"].find({"user_id": user_id}).sort("created_at", -1).limit(10)
    return {
        **public_user(user),
        "order_count": db["order"].count_documents({"user_id": user_id}),
        "recent_orders": [serialize_doc(o) for o in orders],
    }


@router.post("/users", status_code=201)
def create_user(payload: UserCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    now = utcnow()
    user = UserSchema(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        is_active=payload.is_active,
        is_email_verified=True,
        gdpr={
            "consent_date": now,
            "data_processing_consent": True,
            "data_retention_until": now + timedelta(days=config.USER_RETENTION_DAYS),
        },
    ).model_dump()
    user.update(created_at=now, updated_at=now)
    user["_id"] = db["user"].insert_one(user).inserted_id
    logger.info("User %s created by admin %s", user["_id"], admin["email"])
    return public_user(user)


@router.put("/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    user = _user_or_404(db, user_id)
    update_dict = payload.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    if user["_id"] == admin["_id"] and (update_dict.get("role") == "user" or update_dict.get("is_active") is False):
        raise HTTPException(status_code=400, detail="You cannot demote or disable your own account")
    if "email" in update_dict:
        update_dict["email"] = update_dict["email"].lower()
    update_dict["updated_at"] = utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": update_dict})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return public_user(db["user"].find_one({"_id": user["_id"]}))


@router.delete("/users/{user_id}")
def deactivate_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user = _user_or_404(db, user_id)
    if user["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("User %s deactivated by admin %s", user_id, admin["email"])
    return {"ok": True}


@router.post("/users/{user_id}/reset-password")
def send_user_password_reset(user_id: str, db: Database = Depends(get_db)):
    user = _user_or_404(db, user_id)
    token, expires = generate_expiring_token(timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES))
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_reset_token": token, "password_reset_expires": expires}},
    )
    sent, error = email_service.send_password_reset_email(user, token)
    return {"ok": True, "email_sent": sent, "error": error}


# Products


@router.get("/products")
def list_all_products(
    search: Optional[str] = None,
    category: Optional[Category] = None,
    is_active: Optional[bool] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query = build_product_query(search=search, category=category, is_active=is_active)
    return _paginate(db["product"], query, parse_sort(sort), page, limit, present=present_product)


@router.get("/products/low-stock")
def low_stock_products(threshold: Optional[int] = Query(None, ge=0), db: Database = Depends(get_db)):
    query: Dict[str, Any] = {"is_active": True}
    if threshold is not None:
        query["stock"] = {"$lte": threshold}
    else:
        query["$expr"] = {"$lte": ["$stock", "$min_stock"]}
    products = db["product"].find(query).sort("stock", 1)
    items = [present_product(p) for p in products]
    return {"items": items, "total": len(items)}


# Orders


@router.get("/orders")
def list_all_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_status"] = payment_status
    if search:
        query["order_number"] = {"$regex": re.escape(search.strip()), "$options": "i"}
    return _paginate(db["order"], query, [("created_at", -1)], page, limit)


@router.get("/orders/stats")
def orders_stats(
    period: Optional[str] = None,
    db: Database = Depends(get_db),
):
    if period:
        start, end = aq.resolve_date_range(period)
        return order_service.order_stats(db, start, end)
    return order_service.order_stats(db)


@router.get("/orders/{order_id}")
def get_any_order(order_id: str, db: Database = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    customer = _order_customer(db, order)
    return {**serialize_doc(order), "customer": public_user(customer) if customer else None}


@router.put("/orders/{order_id}/status")
def change_order_status(order_id: str, payload: StatusInput, db: Database = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    order = order_service.update_status(db, order, payload.status, note=payload.note)
    customer = _order_customer(db, order)
    if payload.notify and customer:
        email_service.send_order_status_update(customer, order)
    return serialize_doc(order)


@router.post("/orders/{order_id}/tracking")
def set_tracking(order_id: str, payload: TrackingInput, db: Database = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    order = order_service.add_tracking(db, order, payload.tracking_number, payload.carrier, payload.tracking_url)
    customer = _order_customer(db, order)
    if customer:
        email_service.send_order_status_update(customer, order)
    return serialize_doc(order)


@router.put("/orders/{order_id}/fees")
def adjust_order_fees(order_id: str, payload: FeesInput, db: Database = Depends(get_db)):
    fees = payload.model_dump(exclude_none=True)
    if not fees:
        raise HTTPException(status_code=400, detail="No fields to update")
    order = order_service.get_order(db, order_id)
    return serialize_doc(order_service.adjust_fees(db, order, **fees))


# Coupons


@router.post("/coupons", status_code=201)
def create_coupon(payload: Coupon, db: Database = Depends(get_db)):
    coupon = payload.model_dump()
    coupon["code"] = coupon["code"].strip().upper()
    if coupon["type"] == "percent" and coupon["value"] > 100:
        raise HTTPException(status_code=400, detail="Percent coupons cannot exceed 100")
    try:
        coupon_id = create_document(db, "coupon", coupon)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    return serialize_doc(db["coupon"].find_one({"_id": ObjectId(coupon_id)}))


@router.get("/coupons")
def list_coupons(active: Optional[bool] = None, db: Database = Depends(get_db)):
    query = {} if active is None else {"active": active}
    return {"items": get_documents(db, "coupon", query, sort=[("created_at", -1)])}


# GDPR


@router.post("/gdpr/anonymize-expired")
def anonymize_expired(db: Database = Depends(get_db)):
    return {"anonymized": order_service.anonymize_expired_orders(db)}


@router.post("/orders/{order_id}/anonymize")
def anonymize_one_order(order_id: str, db: Database = Depends(get_db)):
    """Erase personal data from a single finished order on request."""
    order = order_service.get_order(db, order_id)
    if order.get("status") not in order_service.FINISHED_STATUSES:
        raise HTTPException(status_code=400, detail="Only delivered, cancelled or returned orders can be anonymized")
    return serialize_doc(order_service.anonymize_order(db, order))
