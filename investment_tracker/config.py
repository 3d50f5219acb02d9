import logging
import os

DEFAULT_HORIZON_MONTHS = 12


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_confirmation_horizon() -> int:
    raw = os.getenv("CONFIRMATION_HORIZON_MONTHS", str(DEFAULT_HORIZON_MONTHS))
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_HORIZON_MONTHS
    return value if value >= 0 else DEFAULT_HORIZON_MONTHS


def get_log_level() -> int:
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./investment_tracker.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
CONFIRMATION_HORIZON_MONTHS = get_confirmation_horizon()
LOG_LEVEL = get_log_level()
