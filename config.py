import os

from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "kolzo")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
AUTH_RATE_LIMIT_ATTEMPTS = int(os.getenv("AUTH_RATE_LIMIT_ATTEMPTS", 5))
AUTH_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
# Only honour X-Forwarded-For when the app sits behind a proxy that sets it
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() in ("1", "true", "yes")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
STRIPE_WEBHOOK_TOLERANCE_SECONDS = 300

# Pricing (INR)
TAX_RATE = 0.18
FREE_SHIPPING_THRESHOLD = 5000
SHIPPING_FEE = 200
DELIVERY_ESTIMATE_DAYS = 5
DEFAULT_CURRENCY = "inr"

# Search
SEARCH_CACHE_TTL_SECONDS = 300
POPULAR_SEARCH_TTL_SECONDS = 30 * 86400
SEARCH_HISTORY_LENGTH = 20


def is_production() -> bool:
    return APP_ENV == "production"
