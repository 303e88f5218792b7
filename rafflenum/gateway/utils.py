import logging
import re
from typing import Any

import requests

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = (
    "card_number",
    "cardnumber",
    "card_cvv",
    "cvv",
    "document_number",
    "registry_code",
    "cpf",
    "cnpj",
    "gateway_token",
    "api_key",
    "apikey",
    "public_key",
)


def _mask_value(key: str, value: str) -> str:
    if "card_number" in key or "cardnumber" in key:
        digits = re.sub(r"\D+", "", value)
        if len(digits) >= 8:
            return digits[:4] + "*" * (len(digits) - 8) + digits[-4:]
        return "****"
    if "cvv" in key:
        return "***"
    if "token" in key:
        return f"{value[:8]}...{value[-4:]}" if len(value) >= 12 else "****"
    if any(part in key for part in ("document", "registry", "cpf", "cnpj")):
        digits = re.sub(r"\D+", "", value)
        if len(digits) >= 5:
            return digits[:3] + "*" * (len(digits) - 5) + digits[-2:]
        return "***"
    return "****"


def mask_sensitive(obj: Any) -> Any:
    """Return a copy of ``obj`` safe to log or persist.

    Card numbers, CVVs, documents, tokens and API keys are masked at any
    nesting depth; everything else is copied unchanged.
    """
    if isinstance(obj, list):
        return [mask_sensitive(item) for item in obj]
    if not isinstance(obj, dict):
        return obj
    masked = {}
    for key, value in obj.items():
        lower = str(key).lower()
        if any(sk in lower for sk in _SENSITIVE_KEYS):
            if isinstance(value, str) and value:
                masked[key] = _mask_value(lower, value)
            else:
                masked[key] = value
        else:
            masked[key] = mask_sensitive(value)
    return masked


def open_session(api_key: str, user_agent: str = "rafflenum/0.1") -> requests.Session:
    """Create a requests session authenticated with HTTP Basic ``api_key:``.

    Raises
    ------
    ValueError
        If ``api_key`` is empty.
    """
    if not api_key:
        raise ValueError("A payment provider API key is required")
    session = requests.Session()
    session.auth = (api_key, "")
    session.headers.update(
        {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": user_agent,
        }
    )
    # Never log the key itself
    logger.debug("Payment provider session opened")
    return session


def error_message(body: Any, default: str) -> str:
    """Extract the provider's error message from a JSON error body."""
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = errors[0].get("message")
            if message:
                return str(message)
        for key in ("error", "message"):
            if body.get(key):
                return str(body[key])
    return default
