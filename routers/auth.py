import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pymongo.database import Database

import config
import email_service
from database import ensure_utc, get_db, serialize_doc, utcnow
from schemas import User as UserSchema, UserAddress, UserPreferences
from security import (
    check_password_strength,
    create_access_token,
    generate_expiring_token,
    get_current_user,
    hash_password,
    public_user,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# Auth models
class RegisterInput(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str
    confirm_password: str
    gdpr_consent: bool = False
    marketing_consent: bool = False

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class TokenInput(BaseModel):
    token: str


class EmailInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    token: str
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class ChangePasswordInput(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(None, min_length=2, max_length=50)
    preferences: Optional[UserPreferences] = None
    marketing_consent: Optional[bool] = None


def _find_by_token(db: Database, field: str, token: str) -> Optional[dict]:
    user = db["user"].find_one({field: token})
    if not user:
        return None
    expires = ensure_utc(user.get(field.replace("_token", "_expires")))
    if expires is None or expires < utcnow():
        return None
    return user


@router.post("/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    if not payload.gdpr_consent:
        raise HTTPException(status_code=400, detail="You must accept the processing of your personal data")

    now = utcnow()
    token, expires = generate_expiring_token(timedelta(hours=config.EMAIL_VERIFICATION_EXPIRE_HOURS))
    user = UserSchema(
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        email_verification_token=token,
        email_verification_expires=expires,
        preferences={"marketing": payload.marketing_consent},
        gdpr={
            "consent_date": now,
            "data_processing_consent": True,
            "marketing_consent": payload.marketing_consent,
            "data_retention_until": now + timedelta(days=config.USER_RETENTION_DAYS),
        },
    ).model_dump()
    user.update(created_at=now, updated_at=now)
    user["_id"] = db["user"].insert_one(user).inserted_id
    logger.info("New account registered: %s", user["_id"])

    email_service.send_verification_email(user, token)
    return TokenResponse(access_token=create_access_token(user), user=public_user(user))


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    return TokenResponse(access_token=create_access_token(user), user=public_user(user))


@router.post("/logout")
def logout(current_user: dict = Depends(get_current_user)):
    # Tokens are stateless; the client drops its copy.
    return {"ok": True, "message": "Logged out"}


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


@router.post("/verify-email")
def verify_email(payload: TokenInput, db: Database = Depends(get_db)):
    user = _find_by_token(db, "email_verification_token", payload.token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"is_email_verified": True, "updated_at": utcnow()},
            "$unset": {"email_verification_token": "", "email_verification_expires": ""},
        },
    )
    email_service.send_welcome_email(user)
    return {"ok": True, "message": "Email verified"}


@router.post("/resend-verification")
def resend_verification(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if current_user.get("is_email_verified"):
        raise HTTPException(status_code=400, detail="Email already verified")
    token, expires = generate_expiring_token(timedelta(hours=config.EMAIL_VERIFICATION_EXPIRE_HOURS))
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"email_verification_token": token, "email_verification_expires": expires}},
    )
    email_service.send_verification_email(current_user, token)
    return {"ok": True, "message": "Verification email sent"}


@router.post("/forgot-password")
def forgot_password(payload: EmailInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower(), "is_active": True})
    if user:
        token, expires = generate_expiring_token(timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES))
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"password_reset_token": token, "password_reset_expires": expires}},
        )
        email_service.send_password_reset_email(user, token)
    # Same answer whether or not the account exists
    return {"ok": True, "message": "If an account exists for this email, a reset link has been sent"}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordInput, db: Database = Depends(get_db)):
    user = _find_by_token(db, "password_reset_token", payload.token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(payload.password), "updated_at": utcnow()},
            "$unset": {"password_reset_token": "", "password_reset_expires": ""},
        },
    )
    logger.info("Password reset for user %s", user["_id"])
    return {"ok": True, "message": "Password updated"}


@router.put("/profile")
def update_profile(
    payload: ProfileUpdate,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    update_dict: Dict[str, Any] = {}
    if payload.first_name is not None:
        update_dict["first_name"] = payload.first_name.strip()
    if payload.last_name is not None:
        update_dict["last_name"] = payload.last_name.strip()
    if payload.preferences is not None:
        update_dict["preferences"] = payload.preferences.model_dump()
    if payload.marketing_consent is not None:
        update_dict["gdpr.marketing_consent"] = payload.marketing_consent
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_dict["updated_at"] = utcnow()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": update_dict})
    return public_user(db["user"].find_one({"_id": current_user["_id"]}))


@router.post("/change-password")
def change_password(
    payload: ChangePasswordInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not verify_password(payload.current_password, current_user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"ok": True, "message": "Password changed"}


@router.post("/addresses", status_code=201)
def add_address(
    address: UserAddress,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    addresses: List[dict] = list(current_user.get("addresses", []))
    if address.is_default:
        for existing in addresses:
            if existing.get("type") == address.type:
                existing["is_default"] = False
    addresses.append({**address.model_dump(), "address_id": str(ObjectId())})
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return {"addresses": addresses}


@router.delete("/addresses/{address_id}")
def remove_address(
    address_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    addresses = [a for a in current_user.get("addresses", []) if a.get("address_id") != address_id]
    if len(addresses) == len(current_user.get("addresses", [])):
        raise HTTPException(status_code=404, detail="Address not found")
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return {"addresses": addresses}


@router.get("/export")
def export_my_data(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    """Everything stored about the caller (GDPR access request)."""
    user_id = str(current_user["_id"])
    orders = [serialize_doc(o) for o in db["order"].find({"user_id": user_id}).sort("created_at", -1)]
    cart = db["cart"].find_one({"user_id": user_id})
    return {
        "user": public_user(current_user),
        "orders": orders,
        "cart": serialize_doc(cart) if cart else None,
        "exported_at": utcnow(),
    }
