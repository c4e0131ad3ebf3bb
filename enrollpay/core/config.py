from pydantic_settings import BaseSettings
from typing import Optional, List


def _parse_csv(v: str) -> List[str]:
    """Parse comma-separated string; strip whitespace; keep non-empty."""
    if not v or not v.strip():
        return []
    return [o.strip() for o in v.split(",") if o.strip()]


_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql://postgres:postgres@db:5432/enrollpay"

    # CORS: comma-separated extra origins for production (e.g. https://enroll.example.com)
    ALLOWED_ORIGINS_EXTRA: str = ""

    def get_allowed_origins(self) -> List[str]:
        """Return CORS allowed origins: default localhost + ALLOWED_ORIGINS_EXTRA."""
        return _DEFAULT_CORS_ORIGINS + _parse_csv(self.ALLOWED_ORIGINS_EXTRA)

    # Public URL of the patient-facing enrollment page
    APP_URL: str = "http://localhost:5173"

    LOG_LEVEL: str = "INFO"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None  # Webhook signing secret (whsec_...)
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Checkout session timing. Stripe rejects expires_at less than 30 minutes out.
    CHECKOUT_SESSION_MAX_MINUTES: int = 30
    CHECKOUT_SESSION_MIN_LEAD_MINUTES: int = 30
    CHECKOUT_PRODUCT_NAME: str = "Medical Service Enrollment"

    # Enrollment links
    DEFAULT_EXPIRES_IN_HOURS: int = 48

    # CRM ingress auth (shared secret header or HMAC over "{timestamp}.{body}")
    ENROLLMENT_SHARED_SECRET: Optional[str] = None
    CRM_HMAC_MAX_AGE_SECONDS: int = 300

    # Admin API bearer token
    ADMIN_API_TOKEN: Optional[str] = None

    # Zoho CRM
    ZOHO_CLIENT_ID: Optional[str] = None
    ZOHO_CLIENT_SECRET: Optional[str] = None
    ZOHO_REFRESH_TOKEN: Optional[str] = None
    ZOHO_ACCOUNTS_URL: str = "https://accounts.zoho.com"
    ZOHO_API_URL: str = "https://www.zohoapis.com/crm/v6"

    # Brevo (transactional email)
    BREVO_API_KEY: Optional[str] = None
    EMAIL_SENDER_ADDRESS: str = "noreply@enrollpay.local"
    EMAIL_SENDER_NAME: str = "Enrollment Team"
    EMAIL_REPLY_TO: Optional[str] = None
    EMAIL_CC: str = ""  # comma-separated

    def get_email_cc(self) -> List[str]:
        return _parse_csv(self.EMAIL_CC)

    # S3 object storage (signatures and consent documents)
    S3_BUCKET: Optional[str] = None
    S3_REGION: Optional[str] = None
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    CONSENT_URL_TTL_SECONDS: int = 300

    # Encryption (Fernet) for signature images at rest
    ENCRYPTION_KEY: Optional[str] = None
    ENCRYPTION_KEY_ROTATION: str = ""  # comma-separated older keys still accepted for decryption

    # Public endpoint rate limiting (fixed window, per client IP)
    RATE_LIMIT_MAX_REQUESTS: int = 30
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Proxies in front of the app that append to X-Forwarded-For; 0 ignores the header
    TRUSTED_PROXY_HOPS: int = 1

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        # Environment variables win; .env is the fallback


settings = Settings()
