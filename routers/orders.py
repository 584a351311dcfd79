import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo.database import Database

import config
import order_service
from cart_service import get_cart_or_404
from database import get_db, serialize_doc, utcnow
from schemas import Address, OrderStatus
from security import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderInput(BaseModel):
    billing_address: Address
    shipping_address: Optional[Address] = None
    payment_method: Literal["stripe", "paypal", "bank_transfer"]
    notes: Optional[str] = Field(None, max_length=500)


class CancelInput(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)


@router.get("")
def list_my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {"user_id": str(current_user["_id"])}
    if status:
        query["status"] = status
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize_doc(o) for o in cursor], "total": total, "page": page, "limit": limit}


@router.get("/{order_id}")
def get_my_order(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_doc(order_service.get_order(db, order_id, user_id=str(current_user["_id"])))


@router.post("/create", status_code=201)
def create_order(
    payload: CreateOrderInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    cart = get_cart_or_404(db, user_id=str(current_user["_id"]))
    order = order_service.create_order_from_cart(
        db,
        current_user,
        cart,
        billing_address=payload.billing_address.model_dump(),
        shipping_address=payload.shipping_address.model_dump() if payload.shipping_address else None,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    return serialize_doc(order)


@router.post("/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: Optional[CancelInput] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = order_service.get_order(db, order_id, user_id=str(current_user["_id"]))
    reason = payload.reason if payload else None
    order = order_service.cancel_order(db, order, note=reason or "Cancelled by customer", by_customer=True)
    return serialize_doc(order)


@router.post("/{order_id}/pay")
def simulate_payment(order_id: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    """Mark an order as paid without a gateway. Disabled in production."""
    if config.ENVIRONMENT == "production":
        raise HTTPException(status_code=403, detail="Simulated payments are disabled")
    order = order_service.get_order(db, order_id, user_id=str(current_user["_id"]))
    if order.get("payment_status") == "paid":
        raise HTTPException(status_code=400, detail="Order already paid")
    reference = {"payment_reference": f"SIM-{order['order_number']}-{int(utcnow().timestamp())}"}
    order = order_service.mark_paid(db, order, reference=reference, note="Simulated payment")
    return serialize_doc(order)
