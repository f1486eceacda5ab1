import os

from pydantic import BaseModel

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
ENV_NAME = os.getenv("ENV", "development")

# Admin bootstrap
ADMIN_PHONE = os.getenv("ADMIN_PHONE", "1234567890")
ADMIN_OTP = os.getenv("ADMIN_OTP", "1234")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Platform Admin")

# Email (SMTP) for OTP delivery
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
FROM_EMAIL = os.getenv("FROM_EMAIL", SMTP_USER or "no-reply@labloom.local")

# Uploaded files (profile images, lab reports)
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
UPLOAD_URL_PREFIX = "/uploads"


def is_dev() -> bool:
    return ENV_NAME.startswith("dev") or ENV_NAME.startswith("local")


class PlatformConfig(BaseModel):
    """Constants the booking, chat and auth flows depend on."""

    platform_fee: float = 50
    admin_phone: str = ADMIN_PHONE
    admin_otp: str = ADMIN_OTP
    otp_ttl_minutes: int = 10
    slot_start: str = "09:00"
    slot_end: str = "16:30"
    slot_step_minutes: int = 30
    chat_window_days: int = 7
    access_token_minutes: int = 15
    refresh_token_days: int = 30
    legacy_token_days: int = 30
    legacy_staff_token_days: int = 7


CONFIG = PlatformConfig()


def get_config() -> PlatformConfig:
    return CONFIG
