"""Runtime settings read from the environment (and a ``.env`` file)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

VINDI_PRODUCTION_URL = "https://app.vindi.com.br/api/v1"
VINDI_SANDBOX_URL = "https://sandbox-app.vindi.com.br/api/v1"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_base_url(value: Optional[str], fallback: str) -> str:
    """Return ``value`` without trailing slashes, or ``fallback`` if unusable."""

    if not value:
        return fallback
    trimmed = value.strip()
    if not trimmed.startswith(("http://", "https://")):
        # Never echo the value: a misplaced API key often lands here.
        logger.error("VINDI_API_BASE_URL is not an http(s) URL; using %s", fallback)
        return fallback
    return trimmed.rstrip("/")


@dataclass(frozen=True)
class Settings:
    """Engine configuration.

    Attributes
    ----------
    reservation_ttl_min : int
        Lifetime of a hold, in minutes.
    price_cents : int
        Default ticket price used when ``app_config`` has no value.
    price_cache_ttl_sec : float
        How long a price read from the database is reused.
    max_numbers_per_user : int
        Per-draw purchase limit enforced on interactive reservations.
    autopay_recheck_sec : float
        Delay before re-checking a charge that came back pending.
    """

    reservation_ttl_min: int = 5
    price_cents: int = 5500
    price_cache_ttl_sec: float = 10.0
    max_numbers_per_user: int = 20
    autopay_recheck_sec: float = 1.0
    vindi_api_key: Optional[str] = None
    vindi_base_url: str = VINDI_PRODUCTION_URL
    vindi_product_id: Optional[str] = None
    vindi_timeout_sec: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        sandbox = _env_bool("VINDI_SANDBOX")
        default_url = VINDI_SANDBOX_URL if sandbox else VINDI_PRODUCTION_URL
        api_key = (os.getenv("VINDI_API_KEY") or "").strip() or None
        settings = cls(
            reservation_ttl_min=max(1, _env_int("RESERVATION_TTL_MIN", 5)),
            price_cents=max(0, _env_int("PRICE_CENTS", 5500)),
            price_cache_ttl_sec=_env_float("PRICE_CACHE_TTL_SEC", 10.0),
            max_numbers_per_user=_env_int("MAX_NUMBERS_PER_USER", 20),
            autopay_recheck_sec=_env_float("AUTOPAY_STATUS_RECHECK_SEC", 1.0),
            vindi_api_key=api_key,
            vindi_base_url=normalize_base_url(
                os.getenv("VINDI_API_BASE_URL") or os.getenv("VINDI_API_URL"),
                default_url,
            ),
            vindi_product_id=os.getenv("VINDI_PRODUCT_ID") or None,
            vindi_timeout_sec=_env_float("VINDI_TIMEOUT_SEC", 30.0),
        )
        logger.debug(
            "settings loaded (vindi key set: %s, base url: %s)",
            settings.vindi_api_key is not None,
            settings.vindi_base_url,
        )
        return settings


__all__ = ["Settings", "normalize_base_url"]
