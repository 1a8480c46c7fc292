import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Set, Tuple
from uuid import uuid4

import structlog
from fastapi import Request

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class PaymentProvider(Protocol):
    def charge(self, amount_minor_units: int, issue_id: str) -> ChargeResult:
        """
        Capture a payment for an issue.

        Must be idempotent per (issue_id, amount): charging the same issue for
        the same amount twice returns the first result instead of booking again.
        Provider faults are reported as UpstreamError.
        """
        ...


class MockPaymentProvider:
    """
    Demo capture provider: every charge succeeds unless the issue was
    registered with decline().
    """

    def __init__(self):
        self._charges: Dict[Tuple[str, int], ChargeResult] = {}
        self._declined: Set[str] = set()
        self._lock = threading.Lock()

    def decline(self, issue_id: str) -> None:
        with self._lock:
            self._declined.add(issue_id)

    def charge(self, amount_minor_units: int, issue_id: str) -> ChargeResult:
        key = (issue_id, amount_minor_units)
        with self._lock:
            if issue_id in self._declined:
                log.info("payments.mock_declined", issue_id=issue_id)
                return ChargeResult(success=False, error="card declined")
            existing = self._charges.get(key)
            if existing is not None:
                return existing
            result = ChargeResult(success=True, reference=f"mock_{uuid4().hex[:16]}")
            self._charges[key] = result
        log.info("payments.mock_charged", issue_id=issue_id, amount_minor_units=amount_minor_units)
        return result

    @property
    def charge_count(self) -> int:
        with self._lock:
            return len(self._charges)


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider
