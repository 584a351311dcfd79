import os

from dotenv import load_dotenv

load_dotenv()

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "spark")

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
EMAIL_VERIFICATION_EXPIRE_HOURS = 24
PASSWORD_RESET_EXPIRE_MINUTES = 60
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

# Frontend / CORS
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Payments
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox")
PAYPAL_API_BASE = (
    "https://api-m.paypal.com" if PAYPAL_MODE == "live" else "https://api-m.sandbox.paypal.com"
)
CURRENCY = os.getenv("CURRENCY", "eur")

# Email
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "SPARK <no-reply@spark.shop>")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@spark.shop")

# Uploads
UPLOAD_PATH = os.getenv("UPLOAD_PATH", "./uploads")
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", 5 * 1024 * 1024))
MAX_FILES_PER_REQUEST = 10
ALLOWED_IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "gif", "webp"}

# Pricing
FREE_SHIPPING_THRESHOLD = 100.0
SHIPPING_COST = 10.0
TAX_RATE = 0.20
MAX_ITEM_QUANTITY = 100
ORDER_NUMBER_PREFIX = "SPK"

# Retention (days)
CART_EXPIRE_DAYS = 30
USER_RETENTION_DAYS = 3 * 365
ORDER_RETENTION_DAYS = 5 * 365
