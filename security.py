import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, serialize_doc, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)

PRIVATE_USER_FIELDS = (
    "password_hash",
    "email_verification_token",
    "email_verification_expires",
    "password_reset_token",
    "password_reset_expires",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: dict, expires_delta: Optional[timedelta] = None) -> str:
    expire = utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user["email"],
        "role": user.get("role", "user"),
        "exp": expire,
    }
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def generate_expiring_token(lifetime: timedelta) -> Tuple[str, datetime]:
    """Random url-safe token and the moment it stops being valid."""
    return secrets.token_urlsafe(32), utcnow() + lifetime


def public_user(user: dict) -> dict:
    user = serialize_doc(user)
    for field in PRIVATE_USER_FIELDS:
        user.pop(field, None)
    return user


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1]


def _load_user(db: Database, token: str) -> dict:
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account disabled")
    return user


# Dependency to get current user

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_db),
) -> dict:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _load_user(db, token)


def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_db),
) -> Optional[dict]:
    token = _bearer_token(authorization)
    if not token:
        return None
    try:
        return _load_user(db, token)
    except HTTPException as exc:
        logger.debug("Ignoring invalid token on optional auth: %s", exc.detail)
        return None


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


def get_session_id(x_session_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_session_id.strip() if x_session_id and x_session_id.strip() else None


def check_password_strength(password: str) -> str:
    """Pydantic validator body shared by every input that sets a password."""
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not re.search(r"[a-z]", password) or not re.search(r"[A-Z]", password) or not re.search(r"\d", password):
        raise ValueError("Password must contain an uppercase letter, a lowercase letter and a digit")
    return password
