from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

import cart_service
from database import get_db
from security import get_current_user, get_optional_user, get_session_id

router = APIRouter(prefix="/cart", tags=["cart"])


class AddItemInput(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)
    size: str = Field("", max_length=20)
    color: str = Field("", max_length=30)


class UpdateItemInput(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


class CouponInput(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)


def cart_owner(
    user: Optional[dict] = Depends(get_optional_user),
    session_id: Optional[str] = Depends(get_session_id),
) -> Tuple[Optional[str], Optional[str]]:
    return (str(user["_id"]) if user else None), session_id


@router.get("")
def get_cart(owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, *owner)
    return cart_service.build_cart_view(db, cart)


@router.post("/items")
def add_to_cart(item: AddItemInput, owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, *owner)
    cart = cart_service.add_item(db, cart, item.product_id, item.quantity, item.size, item.color)
    return cart_service.build_cart_view(db, cart)


@router.put("/items/{item_id}")
def update_cart_item(
    item_id: str,
    payload: UpdateItemInput,
    owner=Depends(cart_owner),
    db: Database = Depends(get_db),
):
    cart = cart_service.get_cart_or_404(db, *owner)
    cart = cart_service.update_item_quantity(db, cart, item_id, payload.quantity)
    return cart_service.build_cart_view(db, cart)


@router.delete("/items/{item_id}")
def remove_cart_item(item_id: str, owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_cart_or_404(db, *owner)
    cart = cart_service.remove_item(db, cart, item_id)
    return cart_service.build_cart_view(db, cart)


@router.delete("")
def clear_cart(owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_cart_or_404(db, *owner)
    cart = cart_service.clear_cart(db, cart)
    return cart_service.build_cart_view(db, cart)


@router.post("/merge")
def merge_cart(
    current_user: dict = Depends(get_current_user),
    session_id: Optional[str] = Depends(get_session_id),
    db: Database = Depends(get_db),
):
    if not session_id:
        raise HTTPException(status_code=400, detail="X-Session-Id header is required")
    user_cart = cart_service.get_or_create_cart(db, user_id=str(current_user["_id"]))
    session_cart = cart_service.find_cart(db, session_id=session_id)
    if session_cart and session_cart["_id"] != user_cart["_id"]:
        user_cart = cart_service.merge_carts(db, user_cart, session_cart)
    return cart_service.build_cart_view(db, user_cart)


@router.post("/apply-coupon")
def apply_coupon(payload: CouponInput, owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_cart_or_404(db, *owner)
    if not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")
    cart = cart_service.apply_coupon(db, cart, payload.code)
    return cart_service.build_cart_view(db, cart)


@router.delete("/coupon")
def remove_coupon(owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_cart_or_404(db, *owner)
    cart = cart_service.remove_coupon(db, cart)
    return cart_service.build_cart_view(db, cart)


@router.post("/validate")
def validate_cart(owner=Depends(cart_owner), db: Database = Depends(get_db)):
    cart = cart_service.get_cart_or_404(db, *owner)
    issues = cart_service.check_availability(db, cart)
    return {
        "valid": bool(cart.get("items")) and not issues,
        "issues": issues,
        "cart": cart_service.build_cart_view(db, cart),
    }
