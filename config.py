"""
Configuration settings for the scan attendance service
"""
import os
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("SCANROLL_DATA_DIR", BASE_DIR / "data"))


def _parse_bool(value, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_int(value, fallback: int, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value))
    except ValueError:
        return fallback


def _parse_csv(value, fallback: list) -> list:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


# Server settings
HOST = os.getenv("SCANROLL_HOST", "0.0.0.0")
PORT = _parse_int(os.getenv("SCANROLL_PORT"), 8000, minimum=1)
LOG_LEVEL = os.getenv("SCANROLL_LOG_LEVEL", "INFO").upper()
CORS_ALLOW_ORIGINS = _parse_csv(os.getenv("SCANROLL_CORS_ALLOW_ORIGINS"), ["*"])

# Storage: "sql" (SQLAlchemy async) or "mongodb" (Motor)
STORE_BACKEND = os.getenv("SCANROLL_STORE_BACKEND", "sql").strip().lower()
DATABASE_URL = os.getenv(
    "SCANROLL_DATABASE_URL",
    f"sqlite+aiosqlite:///{DATA_DIR / 'attendance.db'}",
)
MONGODB_URI = os.getenv("SCANROLL_MONGODB_URI", "mongodb://localhost:27017")
MONGODB_DATABASE = os.getenv("SCANROLL_MONGODB_DATABASE", "scanroll")
STORE_CONNECT_TIMEOUT_SECONDS = _parse_int(os.getenv("SCANROLL_STORE_CONNECT_TIMEOUT_SECONDS"), 8, minimum=1)

# Session dates and clock times are stored in this local reference frame
TIMEZONE = os.getenv("SCANROLL_TIMEZONE", "Asia/Colombo")

# Attendance window
GRACE_PERIOD_MINUTES = _parse_int(os.getenv("SCANROLL_GRACE_PERIOD_MINUTES"), 10)
END_TOLERANCE_MINUTES = _parse_int(os.getenv("SCANROLL_END_TOLERANCE_MINUTES"), 5)

# Session lifecycle
EARLY_ACCESS_MINUTES = _parse_int(os.getenv("SCANROLL_EARLY_ACCESS_MINUTES"), 15)
SCHEDULER_INTERVAL_SECONDS = _parse_int(os.getenv("SCANROLL_SCHEDULER_INTERVAL_SECONDS"), 30, minimum=1)
SCHEDULER_ENABLED = _parse_bool(os.getenv("SCANROLL_SCHEDULER_ENABLED"), True)
