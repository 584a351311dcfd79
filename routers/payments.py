import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from pymongo.database import Database

import config
import order_service
import payment_gateways as gateways
from database import get_db, serialize_doc, to_object_id
from pricing import money
from security import get_current_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class OrderRef(BaseModel):
    order_id: str


class StripeConfirmInput(BaseModel):
    payment_intent_id: str


class PaypalCaptureInput(BaseModel):
    paypal_order_id: str


class RefundInput(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=200)


def _payable_order(db: Database, order_id: str, user: dict) -> dict:
    order = order_service.get_order(db, order_id, user_id=str(user["_id"]))
    if order.get("payment_status") == "paid":
        raise HTTPException(status_code=400, detail="Order already paid")
    if order.get("status") != "pending":
        raise HTTPException(status_code=400, detail=f"Order cannot be paid in status {order.get('status')}")
    return order


@router.get("/methods")
def payment_methods():
    return {
        "methods": [
            {
                "id": "stripe",
                "name": "Credit card",
                "description": "Visa, Mastercard, American Express",
                "enabled": gateways.stripe_enabled(),
                "fees": {"percentage": 2.9, "fixed": 0.25},
            },
            {
                "id": "paypal",
                "name": "PayPal",
                "description": "Fast and secure checkout with PayPal",
                "enabled": gateways.paypal_enabled(),
                "fees": {"percentage": 3.4, "fixed": 0.35},
            },
        ],
        "currency": config.CURRENCY,
    }


# Stripe


@router.post("/stripe/create-intent")
def stripe_create_intent(
    payload: OrderRef,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = _payable_order(db, payload.order_id, current_user)
    intent = gateways.create_payment_intent(order, customer_email=current_user.get("email"))
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_intent_id": intent["id"], "payment_method": "stripe"}},
    )
    logger.info("Stripe intent %s created for order %s", intent["id"], order["order_number"])
    return {
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
        "amount": order["total"],
        "currency": config.CURRENCY,
        "publishable_key": config.STRIPE_PUBLISHABLE_KEY,
    }


@router.post("/stripe/confirm")
def stripe_confirm(
    payload: StripeConfirmInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = db["order"].find_one({"payment_intent_id": payload.payment_intent_id, "user_id": str(current_user["_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found for this payment")
    intent = gateways.retrieve_payment_intent(payload.payment_intent_id)
    if intent["status"] == "succeeded":
        order = order_service.mark_paid(db, order, note="Stripe payment confirmed")
    elif intent["status"] in ("requires_payment_method", "canceled"):
        order = order_service.mark_payment_failed(db, order, reason=f"Stripe status {intent['status']}")
    return {"status": intent["status"], "order": serialize_doc(order)}


# PayPal


@router.post("/paypal/create-order")
def paypal_create_order(
    payload: OrderRef,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = _payable_order(db, payload.order_id, current_user)
    created = gateways.paypal_create_order(order)
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"paypal_order_id": created["id"], "payment_method": "paypal"}},
    )
    approve_url = next((link["href"] for link in created.get("links", []) if link.get("rel") == "approve"), None)
    return {"paypal_order_id": created["id"], "status": created.get("status"), "approve_url": approve_url}


@router.post("/paypal/capture")
def paypal_capture(
    payload: PaypalCaptureInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = db["order"].find_one({"paypal_order_id": payload.paypal_order_id, "user_id": str(current_user["_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found for this payment")
    captured = gateways.paypal_capture_order(payload.paypal_order_id)
    if captured.get("status") != "COMPLETED":
        order_service.mark_payment_failed(db, order, reason=f"PayPal status {captured.get('status')}")
        raise HTTPException(status_code=400, detail="PayPal payment was not completed")
    reference = {"paypal_capture_id": gateways.paypal_capture_id(captured)}
    order = order_service.mark_paid(db, order, reference=reference, note="PayPal payment captured")
    return {"status": captured["status"], "order": serialize_doc(order)}


@router.get("/status/{order_id}")
def payment_status(
    order_id: str,
    refresh: bool = False,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Payment state as stored; ``refresh=true`` also asks the gateway."""
    user_id = None if current_user.get("role") == "admin" else str(current_user["_id"])
    order = order_service.get_order(db, order_id, user_id=user_id)
    result = {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "payment_method": order.get("payment_method"),
        "payment_status": order.get("payment_status"),
        "status": order.get("status"),
        "total": order["total"],
        "refunded_amount": order.get("refunded_amount", 0),
        "paid_at": order.get("paid_at"),
    }
    if refresh and order.get("payment_method") == "paypal" and order.get("paypal_order_id"):
        result["gateway_status"] = gateways.paypal_get_order(order["paypal_order_id"]).get("status")
    elif refresh and order.get("payment_intent_id"):
        result["gateway_status"] = gateways.retrieve_payment_intent(order["payment_intent_id"])["status"]
    return result


@router.post("/refund")
def refund(payload: RefundInput, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    order = db["order"].find_one({"_id": to_object_id(payload.order_id, "order id")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("payment_status") not in ("paid", "partially_refunded"):
        raise HTTPException(status_code=400, detail="Only paid orders can be refunded")
    remaining = money(float(order["total"]) - float(order.get("refunded_amount", 0)))
    amount = payload.amount if payload.amount is not None else remaining
    if amount > remaining:
        raise HTTPException(status_code=400, detail=f"Refund exceeds the remaining {remaining:.2f}")

    if order.get("payment_method") == "stripe" and order.get("payment_intent_id"):
        gateways.refund_payment_intent(order["payment_intent_id"], amount, reason="requested_by_customer")
    elif order.get("payment_method") == "paypal" and order.get("paypal_capture_id"):
        gateways.paypal_refund_capture(order["paypal_capture_id"], amount)

    order = order_service.mark_refunded(db, order, amount)
    logger.info("Refund of %.2f on order %s issued by %s (%s)", amount, order["order_number"], admin["email"], payload.reason)
    return serialize_doc(order)


def _apply_stripe_event(db: Database, event_type: str, data: dict) -> None:
    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        order = order_service.find_by_payment_reference(db, payment_intent_id=data["id"])
        if not order:
            logger.warning("No order for payment intent %s", data["id"])
        elif event_type == "payment_intent.succeeded":
            order_service.mark_paid(db, order, note="Stripe webhook")
        else:
            error = (data.get("last_payment_error") or {}).get("message")
            order_service.mark_payment_failed(db, order, reason=error)
    elif event_type == "charge.refunded":
        order = order_service.find_by_payment_reference(db, payment_intent_id=data.get("payment_intent"))
        if not order:
            logger.warning("No order for refunded charge %s", data.get("id"))
        else:
            order_service.sync_refunded_total(db, order, data.get("amount_refunded", 0) / 100)
    else:
        logger.debug("Unhandled Stripe event type: %s", event_type)


@router.post("/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: Database = Depends(get_db),
):
    payload = await request.body()
    event = gateways.construct_webhook_event(payload, stripe_signature)
    logger.info("Stripe webhook received: %s", event["type"])
    await run_in_threadpool(_apply_stripe_event, db, event["type"], event["data"]["object"])
    return {"received": True}
