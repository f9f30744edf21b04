import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./telecare.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Frontend / backend base URLs for gateway redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")

# Razorpay Configuration (signature-verified gateway)
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_API_BASE = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")

# PayU Configuration (hash-verified redirect gateway)
PAYU_MERCHANT_KEY = os.getenv("PAYU_MERCHANT_KEY", "")
PAYU_MERCHANT_SALT = os.getenv("PAYU_MERCHANT_SALT", "")
# "test" or "production" - default to test for safety
PAYU_ENVIRONMENT = os.getenv("PAYU_ENVIRONMENT", "test")
PAYU_ACTION_URL = (
    "https://secure.payu.in/_payment"
    if PAYU_ENVIRONMENT == "production"
    else "https://test.payu.in/_payment"
)

# Notification delivery endpoint used by the ARQ worker
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_WEBHOOK_TOKEN = os.getenv("NOTIFICATION_WEBHOOK_TOKEN")

# Booking rules
CURRENCY = os.getenv("CURRENCY", "INR")
DEFAULT_CONSULTATION_FEE = Decimal(os.getenv("DEFAULT_CONSULTATION_FEE", "500"))
PATIENT_CANCELLATION_WINDOW_HOURS = int(os.getenv("PATIENT_CANCELLATION_WINDOW_HOURS", "2"))
CASH_AMOUNT_TOLERANCE = Decimal(os.getenv("CASH_AMOUNT_TOLERANCE", "1"))
REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "24"))
DEFAULT_CODE_VALIDITY_DAYS = int(os.getenv("DEFAULT_CODE_VALIDITY_DAYS", "30"))

# Optimistic concurrency - attempts before ConcurrentModificationError surfaces
CONCURRENCY_RETRY_LIMIT = int(os.getenv("CONCURRENCY_RETRY_LIMIT", "3"))

# Rate limits for public-facing endpoints
REFERRAL_VALIDATE_RATE_LIMIT = int(os.getenv("REFERRAL_VALIDATE_RATE_LIMIT", "30"))
PAYMENT_CALLBACK_RATE_LIMIT = int(os.getenv("PAYMENT_CALLBACK_RATE_LIMIT", "60"))
