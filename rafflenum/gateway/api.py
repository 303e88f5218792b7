import logging
import os
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Mapping, Optional

import requests
from dotenv import load_dotenv

from ..config import VINDI_PRODUCTION_URL, VINDI_SANDBOX_URL, normalize_base_url
from ..errors import GatewayError, GatewayTimeout
from .base import (
    CHARGE_APPROVED,
    CHARGE_CANCELED,
    CHARGE_PENDING,
    CHARGE_REFUNDED,
    CHARGE_REJECTED,
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
    StoredPaymentMethod,
)
from .utils import error_message, mask_sensitive, open_session

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

_PAID_TRANSACTION_STATUSES = ("success", "authorized")
_REJECTED_TRANSACTION_STATUSES = ("rejected", "failure")
# A bill found under the idempotency key in one of these states is replaced.
_RECHARGEABLE_STATUSES = (CHARGE_REJECTED, CHARGE_REFUNDED)

WEBHOOK_EVENT_MAP = {
    "bill_paid": "bill.paid",
    "bill_failed": "bill.failed",
    "bill_canceled": "bill.canceled",
    "charge_rejected": "charge.rejected",
    "charge_refunded": "charge.refunded",
    "charge_paid": "charge.paid",
}

WEBHOOK_PAYMENT_STATUS = {
    "bill.paid": "approved",
    "charge.paid": "approved",
    "bill.failed": "rejected",
    "charge.rejected": "rejected",
    "bill.canceled": "canceled",
    "charge.refunded": "refunded",
}


@dataclass
class WebhookEvent:
    """Provider notification normalized for :func:`handle_payment_callback`."""

    type: str
    bill_id: Optional[str] = None
    charge_id: Optional[str] = None
    status: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.bill_id or self.charge_id

    @property
    def payment_status(self) -> Optional[str]:
        """Payment status implied by the event, or ``None`` if not relevant."""
        return WEBHOOK_PAYMENT_STATUS.get(self.type)


def _as_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _first_charge(bill: Mapping[str, Any]) -> dict:
    charges = bill.get("charges") or []
    return charges[0] if charges and isinstance(charges[0], dict) else {}


def classify(bill: Mapping[str, Any], charge: Optional[Mapping[str, Any]] = None) -> str:
    """Reduce a provider bill/charge pair to ``approved``, ``refunded``,
    ``rejected``, ``canceled`` or ``pending``.

    A refunded charge keeps its ``paid_at`` and successful transaction, so
    refunds and cancellations are checked before payment.
    """

    charge = charge if charge is not None else _first_charge(bill)
    transaction = charge.get("last_transaction") or {}
    tx_status = str(transaction.get("status") or "").lower()
    charge_status = str(charge.get("status") or "").lower()
    bill_status = str(bill.get("status") or "").lower()
    tx_type = str(transaction.get("transaction_type") or "").lower()

    if charge_status == "refunded" or tx_type == "refund":
        return CHARGE_REFUNDED
    if bill_status == "canceled" or charge_status == "canceled":
        return CHARGE_CANCELED
    if (
        charge.get("paid_at")
        or charge_status == "paid"
        or bill_status == "paid"
        or tx_status in _PAID_TRANSACTION_STATUSES
    ):
        return CHARGE_APPROVED
    if tx_status in _REJECTED_TRANSACTION_STATUSES or charge_status == "rejected":
        return CHARGE_REJECTED
    return CHARGE_PENDING


class VindiGateway(PaymentGateway):
    """Vindi recurring-billing client.

    Autopay charges are created as credit-card bills against the subscriber's
    stored payment profile. The idempotency key is sent as the bill ``code``
    so :meth:`lookup` can find a bill whose creation timed out.
    """

    provider = "vindi"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: float = 30.0,
        product_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        load_dotenv()
        key = api_key or os.getenv("VINDI_API_KEY")
        if not key:
            raise ValueError("Environment variable 'VINDI_API_KEY' is not set")

        sandbox = (os.getenv("VINDI_SANDBOX") or "").strip().lower() in ("1", "true", "yes")
        fallback = VINDI_SANDBOX_URL if sandbox else VINDI_PRODUCTION_URL
        self.base_url = normalize_base_url(
            base_url or os.getenv("VINDI_API_BASE_URL"), fallback
        )
        self.product_id = product_id or os.getenv("VINDI_PRODUCT_ID") or None
        self.timeout = timeout
        self.session = session or open_session(key)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "VindiGateway":
        return cls(
            api_key=settings.vindi_api_key,
            base_url=settings.vindi_base_url,
            timeout=settings.vindi_timeout_sec,
            product_id=settings.vindi_product_id,
        )

    # -------- core request --------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(
            "Vindi %s %s body=%s", method.upper(), path, mask_sensitive(json)
        )
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.warning("Vindi %s %s timed out after %ss", method.upper(), path, self.timeout)
            raise GatewayTimeout(
                f"Vindi {method.upper()} {path} timed out", code="timeout"
            ) from e
        except requests.RequestException as e:
            logger.error("Vindi %s %s transport error: %s", method.upper(), path, e)
            raise GatewayError(
                f"Vindi {method.upper()} {path} failed: {e}", code="transport_error"
            ) from e

        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {"raw": r.text}

        if r.status_code >= 400:
            message = error_message(
                body, f"Vindi {method.upper()} {path} failed ({r.status_code})"
            )
            code = "auth_error" if r.status_code in (401, 403) else "upstream_error"
            logger.error(
                "Vindi %s %s returned %s: %s", method.upper(), path, r.status_code, message
            )
            raise GatewayError(
                message, status=r.status_code, response=mask_sensitive(body), code=code
            )
        return body

    def _result_from_bill(
        self,
        bill: Mapping[str, Any],
        *,
        http_status: Optional[int] = None,
        request: Optional[dict] = None,
        response: Any = None,
    ) -> ChargeResult:
        charge = _first_charge(bill)
        transaction = charge.get("last_transaction") or {}
        status = classify(bill, charge)
        if status == CHARGE_CANCELED:
            status = CHARGE_REJECTED
        return ChargeResult(
            status=status,
            bill_id=_as_id(bill.get("id")),
            charge_id=_as_id(charge.get("id")),
            http_status=http_status,
            provider_status=charge.get("status") or bill.get("status"),
            message=transaction.get("gateway_message"),
            request=request,
            response=response if response is not None else dict(bill),
        )

    # -------- gateway operations --------
    def charge(
        self,
        *,
        idempotency_key: str,
        amount_cents: int,
        method: StoredPaymentMethod,
        description: str,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive")

        existing = self.lookup(idempotency_key)
        if existing is not None and existing.status not in _RECHARGEABLE_STATUSES:
            logger.info(
                "Vindi bill %s already exists for %s; not charging again",
                existing.bill_id,
                idempotency_key,
            )
            return existing

        item: dict[str, Any] = {
            "description": description,
            "quantity": 1,
            "pricing_schema": {"price": round(amount_cents / 100, 2)},
        }
        if self.product_id:
            item["product_id"] = self.product_id
        body = {
            "customer_id": method.customer_id,
            "payment_method_code": "credit_card",
            "payment_profile": {"id": method.payment_profile_id},
            "code": idempotency_key,
            "due_at": date.today().isoformat(),
            "bill_items": [item],
            "metadata": {**(metadata or {}), "idempotency_key": idempotency_key},
        }

        created = self._request("POST", "/bills", json=body)
        bill = (created or {}).get("bill") or {}
        result = self._result_from_bill(
            bill, http_status=200, request=mask_sensitive(body), response=created
        )

        if result.status == CHARGE_PENDING and result.bill_id and not bill.get("charges"):
            # Some gateways only attempt the card on an explicit charge call.
            charged = self._request("POST", f"/bills/{result.bill_id}/charge", json={})
            charge = (charged or {}).get("charge") or {}
            merged = dict((charged or {}).get("bill") or bill)
            merged["charges"] = [charge] if charge else merged.get("charges") or []
            result = self._result_from_bill(
                merged, http_status=200, request=mask_sensitive(body), response=charged
            )

        logger.info(
            "Vindi bill %s for %s: %s", result.bill_id, idempotency_key, result.status
        )
        return result

    def refund(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> dict:
        if not charge_id:
            if not bill_id:
                raise ValueError("A bill id or charge id is required to refund")
            bill = (self._request("GET", f"/bills/{bill_id}") or {}).get("bill") or {}
            charge_id = _as_id(_first_charge(bill).get("id"))
            if not charge_id:
                raise GatewayError(f"Vindi bill {bill_id} has no charge to refund")
        result = self._request(
            "POST", f"/charges/{charge_id}/refund", json={"cancel_bill": True}
        )
        logger.info("Vindi charge %s refunded", charge_id)
        return result or {}

    def cancel(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> dict:
        if bill_id:
            result = self._request("DELETE", f"/bills/{bill_id}")
        elif charge_id:
            result = self._request("DELETE", f"/charges/{charge_id}")
        else:
            raise ValueError("A bill id or charge id is required to cancel")
        logger.info("Vindi bill %s / charge %s canceled", bill_id, charge_id)
        return result or {}

    def get_status(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> ChargeStatus:
        if bill_id:
            bill = (self._request("GET", f"/bills/{bill_id}") or {}).get("bill") or {}
            charge = _first_charge(bill)
        elif charge_id:
            charge = (self._request("GET", f"/charges/{charge_id}") or {}).get("charge") or {}
            bill = charge.get("bill") or {}
        else:
            raise ValueError("A bill id or charge id is required")
        status = classify(bill, charge)
        return ChargeStatus(
            status=status,
            captured=status == CHARGE_APPROVED,
            bill_id=_as_id(bill.get("id")) or bill_id,
            charge_id=_as_id(charge.get("id")) or charge_id,
            provider_status=charge.get("status") or bill.get("status"),
            raw={"bill": bill, "charge": charge},
        )

    def lookup(self, idempotency_key: str) -> Optional[ChargeResult]:
        params = {
            "query": f"code:{idempotency_key}",
            "sort_by": "created_at",
            "sort_order": "desc",
        }
        found = self._request("GET", "/bills", params=params)
        bills = (found or {}).get("bills") or []
        if not bills:
            return None
        return self._result_from_bill(bills[0], http_status=200)

    # -------- webhooks --------
    @staticmethod
    def parse_webhook(payload: Mapping[str, Any]) -> WebhookEvent:
        """Normalize a Vindi webhook body.

        Raises
        ------
        ValueError
            If ``payload`` is not a mapping.
        """
        if not isinstance(payload, Mapping):
            raise ValueError("Invalid webhook payload")
        event = payload.get("event") if isinstance(payload.get("event"), Mapping) else payload
        raw_type = event.get("type") or event.get("event_type") or "unknown"
        data = event.get("data") or event
        bill = data.get("bill") or {}
        charge = data.get("charge") or {}
        parsed = WebhookEvent(
            type=WEBHOOK_EVENT_MAP.get(raw_type, raw_type),
            bill_id=_as_id(bill.get("id") or data.get("bill_id")),
            charge_id=_as_id(charge.get("id") or data.get("charge_id")),
            status=bill.get("status") or charge.get("status") or data.get("status"),
            metadata=dict(data.get("metadata") or {}),
        )
        logger.debug(
            "Webhook %s -> %s (bill %s, charge %s)",
            raw_type,
            parsed.type,
            parsed.bill_id,
            parsed.charge_id,
        )
        return parsed


__all__ = ["VindiGateway", "WebhookEvent", "classify"]
