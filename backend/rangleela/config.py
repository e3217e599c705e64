import os
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from dotenv import load_dotenv


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    try:
        return int(str(raw_value).strip())
    except (TypeError, ValueError):
        return default


def parse_email_list(value: Optional[str]) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(
        entry.strip().lower() for entry in str(value).split(",") if entry.strip()
    )


@dataclass
class Settings:
    """Runtime configuration for the store backend.

    Built once from the environment by :meth:`from_env` and handed to
    :func:`rangleela.app.create_app`. Nothing below the app factory reads
    ``os.environ`` directly.
    """

    mongo_uri: str = "mongodb://localhost:27017/rangleela"
    jwt_secret_key: str = "change-me-in-production"
    jwt_expires_days: int = 7
    environment: str = "development"
    cors_origins: List[str] = field(default_factory=list)
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    payment_currency: str = "INR"
    gateway_timeout_seconds: int = 10
    notification_timeout_seconds: int = 10
    resend_api_key: str = ""
    resend_sender_email: str = "orders@rangleela.store"
    google_client_id: str = ""
    upload_folder: str = ""
    public_base_url: str = ""
    max_upload_size_mb: int = 60
    trusted_proxy_hops: int = 1
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        cors_origins = [
            _env("FRONTEND_URL"),
            _env("FRONTEND_URL2"),
        ]
        cors_extra = _env("CORS_ALLOWED_ORIGINS")
        if cors_extra:
            cors_origins.extend(origin.strip() for origin in cors_extra.split(","))

        return cls(
            mongo_uri=_env("MONGO_URI", cls.mongo_uri),
            jwt_secret_key=_env("JWT_SECRET_KEY", cls.jwt_secret_key),
            jwt_expires_days=max(1, _env_int("JWT_EXPIRES_DAYS", cls.jwt_expires_days)),
            environment=_env("APP_ENV", cls.environment).lower(),
            cors_origins=[origin for origin in cors_origins if origin],
            admin_emails=parse_email_list(os.getenv("ADMIN_EMAILS")),
            razorpay_key_id=_env("RAZORPAY_KEY_ID"),
            razorpay_key_secret=_env("RAZORPAY_KEY_SECRET"),
            razorpay_base_url=_env("RAZORPAY_BASE_URL", cls.razorpay_base_url),
            payment_currency=_env("PAYMENT_CURRENCY", cls.payment_currency).upper(),
            gateway_timeout_seconds=max(
                1, _env_int("GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout_seconds)
            ),
            notification_timeout_seconds=max(
                1,
                _env_int("NOTIFICATION_TIMEOUT_SECONDS", cls.notification_timeout_seconds),
            ),
            resend_api_key=_env("RESEND_API_KEY"),
            resend_sender_email=_env("RESEND_SENDER_EMAIL", cls.resend_sender_email),
            google_client_id=_env("GOOGLE_CLIENT_ID"),
            upload_folder=_env("UPLOAD_FOLDER"),
            public_base_url=_env("PUBLIC_BASE_URL"),
            max_upload_size_mb=max(
                1, _env_int("MAX_UPLOAD_SIZE_MB", cls.max_upload_size_mb)
            ),
            trusted_proxy_hops=max(
                0, _env_int("TRUSTED_PROXY_HOPS", cls.trusted_proxy_hops)
            ),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
        )
