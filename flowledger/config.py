from __future__ import annotations

import logging
import os

from flowledger.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    RateProvider,
    StaticRateProvider,
    normalize_currency,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./flowledger.db")


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_link_retries() -> int:
    raw = os.getenv("FLOWLEDGER_LINK_RETRIES", "3")
    try:
        return max(1, int(raw))
    except ValueError:
        return 3


def build_rate_provider() -> RateProvider:
    source = os.getenv("FLOWLEDGER_RATE_SOURCE", "frankfurter").strip().lower()
    if source == "static":
        return StaticRateProvider()
    return CompositeRateProvider(
        primary=FrankfurterRateProvider(),
        fallback=StaticRateProvider(),
    )


def configure_logging(level: str | None = None) -> None:
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
