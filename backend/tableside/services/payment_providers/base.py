"""Base payment provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from tableside.models import PaymentStatus

# Provider-native status -> normalized status
_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.PENDING.value,
    "requires_confirmation": PaymentStatus.PENDING.value,
    "requires_capture": PaymentStatus.PROCESSING.value,
    "requires_action": PaymentStatus.PROCESSING.value,
    "processing": PaymentStatus.PROCESSING.value,
    "pending": PaymentStatus.PENDING.value,
    "succeeded": PaymentStatus.SUCCEEDED.value,
    "paid": PaymentStatus.SUCCEEDED.value,
    "canceled": PaymentStatus.CANCELLED.value,
    "cancelled": PaymentStatus.CANCELLED.value,
    "failed": PaymentStatus.FAILED.value,
}


def normalize_status(raw: Optional[str]) -> str:
    """Map a provider status onto pending/processing/succeeded/failed/cancelled.

    Unknown values are treated as ``pending`` so they never count as money received.
    """
    if not raw:
        return PaymentStatus.PENDING.value
    return _STATUS_MAP.get(raw.lower(), PaymentStatus.PENDING.value)


@dataclass
class ProviderIntent:
    """A freshly created intent on the provider side."""

    provider_id: str
    status: str
    client_secret: Optional[str] = None


@dataclass
class ProviderResult:
    """Outcome of confirm/refund/retrieve or a webhook event."""

    provider_id: str
    status: str
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, object] = field(default_factory=dict)


class PaymentProvider(ABC):
    """Abstract base class for payment providers.

    Every method either returns a result with a normalized status or raises
    ``ProviderError``/``ProviderTimeout``. Calls are bounded by the provider's
    configured timeout.
    """

    name: str = "abstract"

    @abstractmethod
    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProviderIntent:
        """Reserve an intent for ``amount``; repeated keys return the same intent."""

    @abstractmethod
    def confirm(self, provider_id: str, payment_method: str) -> ProviderResult:
        """Attach the payer's method token and start the charge."""

    @abstractmethod
    def refund(self, provider_id: str, amount: Decimal, reason: Optional[str] = None) -> ProviderResult:
        ...

    @abstractmethod
    def retrieve(self, provider_id: str) -> ProviderResult:
        ...

    @abstractmethod
    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[ProviderResult]:
        """Verify and decode a webhook body.

        Returns None for event types that carry no payment status.
        """
