import os

# Storage
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))

# Payment gateway (MyFatoorah)
MYFATOORAH_BASE_URL = os.getenv("MYFATOORAH_BASE_URL", "https://apitest.myfatoorah.com")
MYFATOORAH_API_KEY = os.getenv("MYFATOORAH_API_KEY", "")
GATEWAY_TIMEOUT_SEC = float(os.getenv("GATEWAY_TIMEOUT_SEC", "15"))
CURRENCY = os.getenv("CURRENCY", "KWD")
MOBILE_COUNTRY_CODE = os.getenv("MOBILE_COUNTRY_CODE", "+965")

# Redirect targets
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Pending order sweep
PENDING_ORDER_TTL_MIN = int(os.getenv("PENDING_ORDER_TTL_MIN", "30"))
PENDING_SWEEP_INTERVAL_SEC = int(os.getenv("PENDING_SWEEP_INTERVAL_SEC", "0"))

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def is_development() -> bool:
    return APP_ENV == "development"
