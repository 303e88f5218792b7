from .ledger import RunLedger  # noqa: F401
from .orchestrator import (  # noqa: F401
    AutopayOrchestrator,
    AutopayReport,
    ProfileOutcome,
    autopay_idempotency_key,
)

__all__ = [
    "RunLedger",
    "AutopayOrchestrator",
    "AutopayReport",
    "ProfileOutcome",
    "autopay_idempotency_key",
]
