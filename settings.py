"""
Environment configuration for the STES storefront API
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "stes-ecommerce")

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change")
ALGORITHM = "HS256"
CUSTOMER_TOKEN_EXPIRE_DAYS = int(os.getenv("CUSTOMER_JWT_EXPIRES_DAYS", "30"))
ADMIN_TOKEN_EXPIRE_HOURS = int(os.getenv("ADMIN_JWT_EXPIRES_HOURS", "24"))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
ALLOWED_ORIGINS = [origin.strip() for origin in FRONTEND_URL.split(",") if origin.strip()]

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY")

# Login lockout
MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION_HOURS = 2

PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
