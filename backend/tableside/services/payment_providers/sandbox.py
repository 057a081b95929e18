"""Deterministic in-process provider for local development and tests.

Method tokens steer the outcome:
    anything containing ``fail``      -> the charge is declined
    anything containing ``timeout``   -> ``ProviderTimeout``
    anything else                     -> ``processing``, settling to
                                         ``succeeded`` on the next retrieve
"""

import json
import logging
import threading
import uuid
from decimal import Decimal
from typing import Dict, Optional

from tableside.core.exceptions import ProviderError, ProviderTimeout
from tableside.core.money import ZERO, to_decimal
from tableside.models import PaymentStatus
from tableside.services.payment_providers.base import (
    PaymentProvider,
    ProviderIntent,
    ProviderResult,
    normalize_status,
)

logger = logging.getLogger(__name__)


class SandboxProvider(PaymentProvider):
    name = "sandbox"

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._intents: Dict[str, dict] = {}
        self._by_key: Dict[str, str] = {}

    def _get(self, provider_id: str) -> dict:
        intent = self._intents.get(provider_id)
        if intent is None:
            raise ProviderError(f"No such payment intent: {provider_id}", code="resource_missing")
        return intent

    def _result(self, intent: dict) -> ProviderResult:
        return ProviderResult(
            provider_id=intent["id"],
            status=intent["status"],
            payment_method=intent.get("payment_method"),
            failure_reason=intent.get("failure_reason"),
            amount=intent["amount"],
        )

    def create_intent(self, amount, currency, metadata, idempotency_key) -> ProviderIntent:
        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing:
                intent = self._intents[existing]
            else:
                provider_id = f"sbx_pi_{uuid.uuid4().hex[:24]}"
                intent = {
                    "id": provider_id,
                    "amount": to_decimal(amount),
                    "currency": currency,
                    "metadata": dict(metadata),
                    "status": PaymentStatus.PENDING.value,
                    "client_secret": f"{provider_id}_secret_{uuid.uuid4().hex[:12]}",
                    "refunded": ZERO,
                }
                self._intents[provider_id] = intent
                self._by_key[idempotency_key] = provider_id
        return ProviderIntent(
            provider_id=intent["id"],
            status=intent["status"],
            client_secret=intent["client_secret"],
        )

    def confirm(self, provider_id: str, payment_method: str) -> ProviderResult:
        if "timeout" in payment_method:
            raise ProviderTimeout("confirm", self.timeout_seconds)
        with self._lock:
            intent = self._get(provider_id)
            intent["payment_method"] = payment_method
            if "fail" in payment_method:
                intent["status"] = PaymentStatus.FAILED.value
                intent["failure_reason"] = "card_declined"
            elif intent["status"] == PaymentStatus.PENDING.value:
                intent["status"] = PaymentStatus.PROCESSING.value
            return self._result(intent)

    def refund(self, provider_id: str, amount: Decimal, reason: Optional[str] = None) -> ProviderResult:
        with self._lock:
            intent = self._get(provider_id)
            if intent["status"] != PaymentStatus.SUCCEEDED.value:
                raise ProviderError(
                    "Only succeeded payments can be refunded",
                    provider_status=intent["status"],
                    code="charge_not_refundable",
                )
            refundable = intent["amount"] - intent["refunded"]
            if amount > refundable:
                raise ProviderError(f"Refund exceeds refundable amount {refundable}", code="amount_too_large")
            intent["refunded"] += amount
            logger.info(f"Sandbox refund {amount} on {provider_id} ({reason or 'no reason'})")
            result = self._result(intent)
            result.amount = amount
            return result

    def retrieve(self, provider_id: str) -> ProviderResult:
        with self._lock:
            intent = self._get(provider_id)
            if intent["status"] == PaymentStatus.PROCESSING.value:
                intent["status"] = PaymentStatus.SUCCEEDED.value
            return self._result(intent)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[ProviderResult]:
        """Accepts ``{"provider_payment_id", "status", "payment_method"?}``."""
        try:
            body = json.loads(payload)
            provider_id = body["provider_payment_id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(f"Malformed sandbox event: {exc}", code="invalid_event") from exc

        status = normalize_status(body.get("status"))
        with self._lock:
            intent = self._intents.get(provider_id)
            if intent is not None:
                intent["status"] = status
        return ProviderResult(
            provider_id=provider_id,
            status=status,
            payment_method=body.get("payment_method"),
            failure_reason=body.get("failure_reason"),
        )
