"""
Password hashing, JWT tokens and the FastAPI auth dependencies
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from database import get_db, to_object_id
from settings import (
    ADMIN_TOKEN_EXPIRE_HOURS,
    ALGORITHM,
    CUSTOMER_TOKEN_EXPIRE_DAYS,
    LOCK_DURATION_HOURS,
    MAX_LOGIN_ATTEMPTS,
    SECRET_KEY,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


class InvalidCredentials(Exception):
    pass


class AccountLocked(Exception):
    pass


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(days=CUSTOMER_TOKEN_EXPIRE_DAYS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_customer_token(customer_id: str) -> str:
    return create_access_token({"sub": customer_id, "type": "customer"})


def create_admin_token(admin_id: str) -> str:
    return create_access_token(
        {"sub": admin_id, "type": "admin"},
        expires_delta=timedelta(hours=ADMIN_TOKEN_EXPIRE_HOURS),
    )


def decode_token(credentials: Optional[HTTPAuthorizationCredentials]) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    try:
        return jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired. Authorization denied.")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token. Authorization denied.")


def get_current_customer(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)):
    payload = decode_token(credentials)
    if payload.get("type") != "customer":
        raise HTTPException(status_code=401, detail="Invalid token. Authorization denied.")
    customer = get_db()["customer"].find_one({"_id": to_object_id(payload.get("sub"))})
    if not customer:
        raise HTTPException(status_code=401, detail="Authorization denied. Customer not found.")
    if not customer.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is deactivated. Authorization denied.")
    return customer


def get_current_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)):
    payload = decode_token(credentials)
    if payload.get("type") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    admin = get_db()["admin"].find_one({"_id": to_object_id(payload.get("sub"))})
    if not admin:
        raise HTTPException(status_code=401, detail="Authorization denied. Admin not found.")
    return admin


# Login lockout

def is_locked(customer: dict) -> bool:
    lock_until = customer.get("lockUntil")
    return bool(lock_until and lock_until > datetime.utcnow())


def register_failed_login(customer: dict) -> None:
    customers = get_db()["customer"]
    lock_until = customer.get("lockUntil")
    if lock_until and lock_until <= datetime.utcnow():
        # previous lock expired, restart the count
        customers.update_one({"_id": customer["_id"]}, {"$set": {"loginAttempts": 1, "lockUntil": None}})
        return
    attempts = customer.get("loginAttempts", 0) + 1
    update = {"loginAttempts": attempts}
    if attempts >= MAX_LOGIN_ATTEMPTS:
        update["lockUntil"] = datetime.utcnow() + timedelta(hours=LOCK_DURATION_HOURS)
        logger.warning("Customer %s locked after %d failed logins", customer["_id"], attempts)
    customers.update_one({"_id": customer["_id"]}, {"$set": update})


def authenticate_customer(email: str, password: str) -> dict:
    """Return the customer matching the credentials, tracking failed attempts."""
    customer = get_db()["customer"].find_one({"email": email.lower(), "isActive": True})
    if not customer:
        raise InvalidCredentials("Invalid credentials")
    if is_locked(customer):
        raise AccountLocked("Account is temporarily locked due to too many failed login attempts")
    if not verify_password(password, customer.get("password_hash", "")):
        register_failed_login(customer)
        raise InvalidCredentials("Invalid credentials")

    update = {"lastLogin": datetime.utcnow(), "loginAttempts": 0, "lockUntil": None}
    get_db()["customer"].update_one({"_id": customer["_id"]}, {"$set": update})
    customer.update(update)
    return customer
