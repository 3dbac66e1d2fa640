import os
from datetime import time

from dotenv import load_dotenv
import pytz


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_time(value: str | None, default: str) -> time:
    raw = (value or default).strip()
    hours, minutes = raw.split(":", 1)
    return time(int(hours), int(minutes))


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic.db")

CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Kolkata")

MORNING_SESSION_START = _get_time(os.getenv("MORNING_SESSION_START"), "09:00")
MORNING_SESSION_END = _get_time(os.getenv("MORNING_SESSION_END"), "13:00")
AFTERNOON_SESSION_START = _get_time(os.getenv("AFTERNOON_SESSION_START"), "14:00")
AFTERNOON_SESSION_END = _get_time(os.getenv("AFTERNOON_SESSION_END"), "18:00")
BREAK_START = _get_time(os.getenv("BREAK_START"), "13:00")
BREAK_END = _get_time(os.getenv("BREAK_END"), "14:00")

DEFAULT_SESSION_CAPACITY = int(os.getenv("DEFAULT_SESSION_CAPACITY", "20"))
CANCELLATION_CUTOFF_HOURS = float(os.getenv("CANCELLATION_CUTOFF_HOURS", "2"))
BOOKING_LEAD_MINUTES = int(os.getenv("BOOKING_LEAD_MINUTES", "60"))
AVG_CONSULTATION_MINUTES = int(os.getenv("AVG_CONSULTATION_MINUTES", "15"))

# Status applied to unattended appointments by the sweeper: "cancelled" or "missed".
SWEEP_NO_SHOW_STATUS = os.getenv("SWEEP_NO_SHOW_STATUS", "cancelled").strip().lower()
SWEEP_GRACE_MINUTES = int(os.getenv("SWEEP_GRACE_MINUTES", "5"))
SWEEPER_ENABLED = _get_bool(os.getenv("SWEEPER_ENABLED"), default=True)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:4200").split(",")
    if origin.strip()
]


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if SWEEP_NO_SHOW_STATUS not in {"cancelled", "missed"}:
        raise RuntimeError("SWEEP_NO_SHOW_STATUS must be 'cancelled' or 'missed'.")
    if CLINIC_TIMEZONE not in pytz.all_timezones_set:
        raise RuntimeError(f"Unknown CLINIC_TIMEZONE: {CLINIC_TIMEZONE}")
    if not MORNING_SESSION_START < MORNING_SESSION_END <= AFTERNOON_SESSION_START < AFTERNOON_SESSION_END:
        raise RuntimeError("Session windows must be ordered morning before afternoon.")
