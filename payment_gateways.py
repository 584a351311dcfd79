"""Stripe and PayPal wrappers.

Amounts enter and leave this module in major currency units (euros); the
conversion to Stripe's integer cents happens here.
"""

import logging
from typing import Any, Dict, Optional

import httpx
import stripe
from fastapi import HTTPException

import config
from pricing import to_cents

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY

PAYPAL_TIMEOUT = httpx.Timeout(connect=10.0, read=30.0, write=30.0, pool=10.0)


def stripe_enabled() -> bool:
    return bool(config.STRIPE_SECRET_KEY)


def paypal_enabled() -> bool:
    return bool(config.PAYPAL_CLIENT_ID and config.PAYPAL_CLIENT_SECRET)


STRIPE_FAILURES = (
    (stripe.CardError, 402, "The card was declined, try another payment method"),
    (stripe.RateLimitError, 429, "Payment provider is busy, retry in a moment"),
    (stripe.InvalidRequestError, 400, "The payment request was rejected by the provider"),
    (stripe.AuthenticationError, 500, "Card payments are misconfigured on the store side"),
    (stripe.APIConnectionError, 503, "Payment provider unreachable, retry shortly"),
)


def stripe_http_error(error: stripe.StripeError, context: str) -> HTTPException:
    logger.error("Stripe %s failed with %s: %s", context, type(error).__name__, error)
    for error_class, status_code, detail in STRIPE_FAILURES:
        if isinstance(error, error_class):
            if isinstance(error, stripe.CardError) and error.user_message:
                detail = error.user_message
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=500, detail="Payment could not be processed")


# Stripe


def create_payment_intent(order: dict, customer_email: Optional[str] = None) -> Any:
    try:
        return stripe.PaymentIntent.create(
            amount=to_cents(order["total"]),
            currency=config.CURRENCY,
            automatic_payment_methods={"enabled": True},
            receipt_email=customer_email,
            metadata={
                "order_id": str(order["_id"]),
                "order_number": order["order_number"],
                "user_id": order["user_id"],
            },
        )
    except stripe.StripeError as e:
        raise stripe_http_error(e, "create_payment_intent")


def retrieve_payment_intent(payment_intent_id: str) -> Any:
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        raise stripe_http_error(e, "retrieve_payment_intent")


def refund_payment_intent(payment_intent_id: str, amount: Optional[float] = None, reason: Optional[str] = None) -> Any:
    params: Dict[str, Any] = {"payment_intent": payment_intent_id}
    if amount is not None:
        params["amount"] = to_cents(amount)
    if reason:
        params["reason"] = reason
    try:
        return stripe.Refund.create(**params)
    except stripe.StripeError as e:
        raise stripe_http_error(e, "refund_payment_intent")


def construct_webhook_event(payload: bytes, signature: Optional[str]) -> Any:
    if not config.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="Stripe webhook secret is not configured")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.warning("Invalid Stripe webhook payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Invalid Stripe webhook signature")
        raise HTTPException(status_code=400, detail="Invalid signature")


# PayPal (REST v2)


def _paypal_error(response: httpx.Response, context: str) -> HTTPException:
    logger.error("PayPal error in %s: %s %s", context, response.status_code, response.text[:500])
    return HTTPException(status_code=502, detail="PayPal request failed. Please try again later.")


def _paypal_request(method: str, path: str, context: str, json: Optional[dict] = None) -> dict:
    if not paypal_enabled():
        raise HTTPException(status_code=503, detail="PayPal is not configured")
    try:
        with httpx.Client(base_url=config.PAYPAL_API_BASE, timeout=PAYPAL_TIMEOUT) as client:
            token_response = client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(config.PAYPAL_CLIENT_ID, config.PAYPAL_CLIENT_SECRET),
            )
            if token_response.status_code != 200:
                raise _paypal_error(token_response, f"{context} (oauth)")
            token = token_response.json()["access_token"]

            response = client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
    except httpx.HTTPError as e:
        logger.error("PayPal connection error in %s: %s", context, e)
        raise HTTPException(status_code=503, detail="PayPal temporarily unavailable. Please try again.")

    if response.status_code >= 400:
        raise _paypal_error(response, context)
    return response.json() if response.content else {}


def paypal_create_order(order: dict) -> dict:
    body = {
        "intent": "CAPTURE",
        "purchase_units": [
            {
                "reference_id": str(order["_id"]),
                "custom_id": order["order_number"],
                "amount": {"currency_code": config.CURRENCY.upper(), "value": f"{order['total']:.2f}"},
            }
        ],
        "application_context": {
            "return_url": f"{config.CLIENT_URL}/checkout/success?order={order['_id']}",
            "cancel_url": f"{config.CLIENT_URL}/checkout/cancel?order={order['_id']}",
        },
    }
    return _paypal_request("POST", "/v2/checkout/orders", "paypal_create_order", json=body)


def paypal_capture_order(paypal_order_id: str) -> dict:
    return _paypal_request("POST", f"/v2/checkout/orders/{paypal_order_id}/capture", "paypal_capture_order", json={})


def paypal_get_order(paypal_order_id: str) -> dict:
    return _paypal_request("GET", f"/v2/checkout/orders/{paypal_order_id}", "paypal_get_order")


def paypal_refund_capture(capture_id: str, amount: Optional[float] = None) -> dict:
    body: Dict[str, Any] = {}
    if amount is not None:
        body["amount"] = {"currency_code": config.CURRENCY.upper(), "value": f"{amount:.2f}"}
    return _paypal_request("POST", f"/v2/payments/captures/{capture_id}/refund", "paypal_refund_capture", json=body)


def paypal_capture_id(capture_response: dict) -> Optional[str]:
    for unit in capture_response.get("purchase_units", []):
        for capture in (unit.get("payments") or {}).get("captures", []):
            return capture.get("id")
    return None
