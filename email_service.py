"""
Transactional email

Messages go out through Resend. Every sender returns ``(sent, error)`` and
never raises: a mail outage must not fail the request that triggered it.
"""

import logging
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

import config

logger = logging.getLogger(__name__)

SHOP_NAME = "SPARK"

STATUS_LABELS = {
    "pending": "Pending",
    "paid": "Paid",
    "processing": "Being prepared",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "returned": "Returned",
}


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> Tuple[bool, Optional[str]]:
    if not config.RESEND_API_KEY:
        logger.info("Email delivery disabled, skipping '%s' to %s", subject, to)
        return False, "Resend API key is not configured."

    payload: Dict[str, object] = {
        "from": config.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text

    resend.api_key = config.RESEND_API_KEY
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        logger.warning("Failed to send '%s' to %s: %s", subject, to, exc)
        return False, str(exc)

    if not isinstance(response, dict) or not response.get("id"):
        logger.warning("Unexpected Resend response for '%s': %r", subject, response)
        return False, str(response)

    logger.info("Sent '%s' to %s (id=%s)", subject, to, response["id"])
    return True, None


def _layout(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
  <body style="margin:0;padding:0;background:#f4f4f5;font-family:Arial,sans-serif;color:#18181b;">
    <div style="max-width:600px;margin:0 auto;padding:24px;">
      <h1 style="font-size:22px;margin:0 0 16px;">{SHOP_NAME}</h1>
      <div style="background:#ffffff;border-radius:8px;padding:24px;">
        <h2 style="font-size:18px;margin-top:0;">{escape(title)}</h2>
        {body}
      </div>
      <p style="font-size:12px;color:#71717a;margin-top:16px;">{SHOP_NAME} &middot; {config.CLIENT_URL}</p>
    </div>
  </body>
</html>"""


def _button(url: str, label: str) -> str:
    return (
        f'<p><a href="{escape(url)}" style="display:inline-block;padding:10px 18px;'
        f'background:#2563eb;color:#ffffff;border-radius:6px;text-decoration:none;">{escape(label)}</a></p>'
    )


def _money(amount: float) -> str:
    return f"{float(amount or 0):.2f} {config.CURRENCY.upper()}"


def send_verification_email(user: dict, token: str) -> Tuple[bool, Optional[str]]:
    url = f"{config.CLIENT_URL}/verify-email?token={token}"
    body = (
        f"<p>Hello {escape(user.get('first_name', ''))},</p>"
        "<p>Please confirm your email address to activate your account.</p>"
        f"{_button(url, 'Verify my email')}"
        f"<p>This link expires in {config.EMAIL_VERIFICATION_EXPIRE_HOURS} hours.</p>"
    )
    text = f"Confirm your email address: {url}"
    return send_email(user["email"], f"Verify your {SHOP_NAME} account", _layout("Verify your email", body), text)


def send_welcome_email(user: dict) -> Tuple[bool, Optional[str]]:
    body = (
        f"<p>Welcome {escape(user.get('first_name', ''))}!</p>"
        "<p>Your email is verified. Chargers, cases, cables and more are waiting for you.</p>"
        f"{_button(config.CLIENT_URL + '/products', 'Start shopping')}"
    )
    return send_email(user["email"], f"Welcome to {SHOP_NAME}", _layout("Welcome aboard", body))


def send_password_reset_email(user: dict, token: str) -> Tuple[bool, Optional[str]]:
    url = f"{config.CLIENT_URL}/reset-password?token={token}"
    body = (
        f"<p>Hello {escape(user.get('first_name', ''))},</p>"
        "<p>We received a request to reset your password.</p>"
        f"{_button(url, 'Choose a new password')}"
        f"<p>This link expires in {config.PASSWORD_RESET_EXPIRE_MINUTES} minutes. "
        "If you did not ask for it you can ignore this email.</p>"
    )
    text = f"Reset your password: {url}"
    return send_email(user["email"], "Reset your password", _layout("Password reset", body), text)


def _order_rows(items: List[dict]) -> str:
    rows = []
    for item in items:
        line = float(item.get("price", 0)) * int(item.get("quantity", 1))
        rows.append(
            "<tr>"
            f"<td>{escape(str(item.get('name', 'Item')))}</td>"
            f"<td style=\"text-align:center;\">{int(item.get('quantity', 1))}</td>"
            f"<td style=\"text-align:right;\">{_money(line)}</td>"
            "</tr>"
        )
    return "".join(rows)


def send_order_confirmation(user: dict, order: dict) -> Tuple[bool, Optional[str]]:
    body = (
        f"<p>Thank you {escape(user.get('first_name', ''))}, we received order "
        f"<strong>{escape(order['order_number'])}</strong>.</p>"
        '<table style="width:100%;border-collapse:collapse;">'
        "<tr><th align=\"left\">Item</th><th>Qty</th><th align=\"right\">Total</th></tr>"
        f"{_order_rows(order.get('items', []))}"
        "</table>"
        f"<p>Subtotal: {_money(order.get('subtotal'))}<br>"
        f"Shipping: {_money(order.get('shipping_cost'))}<br>"
        f"Tax: {_money(order.get('tax'))}<br>"
        f"Discount: -{_money(order.get('discount'))}<br>"
        f"<strong>Total: {_money(order.get('total'))}</strong></p>"
        f"{_button(config.CLIENT_URL + '/orders', 'Track my order')}"
    )
    text = f"Order {order['order_number']} received. Total: {_money(order.get('total'))}."
    return send_email(
        user["email"],
        f"Order confirmation {order['order_number']}",
        _layout("Order confirmed", body),
        text,
    )


def send_order_status_update(user: dict, order: dict) -> Tuple[bool, Optional[str]]:
    status = order.get("status", "pending")
    label = STATUS_LABELS.get(status, status)
    tracking = ""
    if status == "shipped" and order.get("tracking_number"):
        tracking = f"<p>Tracking number: <strong>{escape(order['tracking_number'])}</strong>"
        if order.get("carrier"):
            tracking += f" ({escape(order['carrier'])})"
        tracking += "</p>"
        if order.get("tracking_url"):
            tracking += _button(order["tracking_url"], "Follow my parcel")
    body = (
        f"<p>Hello {escape(user.get('first_name', ''))},</p>"
        f"<p>Your order <strong>{escape(order['order_number'])}</strong> is now: <strong>{label}</strong>.</p>"
        f"{tracking}"
    )
    return send_email(
        user["email"],
        f"Order {order['order_number']}: {label}",
        _layout("Order update", body),
    )


def send_admin_notification(subject: str, message: str) -> Tuple[bool, Optional[str]]:
    body = f"<p>{escape(message)}</p>"
    return send_email(config.ADMIN_EMAIL, f"[{SHOP_NAME} admin] {subject}", _layout(subject, body), message)
