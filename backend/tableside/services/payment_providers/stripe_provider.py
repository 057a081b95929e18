"""Stripe provider built on the official ``stripe`` SDK.

The SDK is synchronous; routes that reach it are plain ``def`` handlers so
FastAPI runs them in the threadpool.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from tableside.core.exceptions import ProviderError, ProviderTimeout
from tableside.core.money import from_minor_units, to_minor_units
from tableside.models import PaymentStatus
from tableside.services.payment_providers.base import (
    PaymentProvider,
    ProviderIntent,
    ProviderResult,
    normalize_status,
)

logger = logging.getLogger(__name__)

# Webhook event type -> normalized status, where the event says more than the object status
_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED.value,
    "payment_intent.payment_failed": PaymentStatus.FAILED.value,
    "payment_intent.canceled": PaymentStatus.CANCELLED.value,
    "payment_intent.processing": PaymentStatus.PROCESSING.value,
    "payment_intent.requires_action": PaymentStatus.PROCESSING.value,
}


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str = "", timeout_seconds: float = 10.0):
        if not secret_key:
            raise ValueError("StripeProvider requires a secret key")
        self._webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        stripe.api_key = secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.CardError as exc:
            logger.info(f"Stripe {operation} declined: {exc.code}")
            raise ProviderError(
                str(exc.user_message or exc),
                provider_status=PaymentStatus.FAILED.value,
                code=exc.code,
            ) from exc
        except stripe.APIConnectionError as exc:
            logger.warning(f"Stripe {operation} connection error: {exc}")
            raise ProviderTimeout(operation, self.timeout_seconds) from exc
        except stripe.StripeError as exc:
            logger.error(f"Stripe {operation} error: {exc}")
            raise ProviderError(str(exc.user_message or exc), code=getattr(exc, "code", None)) from exc

    @staticmethod
    def _method_label(intent: Any) -> Optional[str]:
        types = getattr(intent, "payment_method_types", None) or []
        return types[0] if types else None

    def _result(self, intent: Any) -> ProviderResult:
        last_error = getattr(intent, "last_payment_error", None)
        return ProviderResult(
            provider_id=intent.id,
            status=normalize_status(getattr(intent, "status", None)),
            payment_method=self._method_label(intent),
            failure_reason=getattr(last_error, "message", None),
            amount=from_minor_units(getattr(intent, "amount", 0) or 0, getattr(intent, "currency", None) or "eur"),
        )

    def create_intent(self, amount, currency, metadata, idempotency_key) -> ProviderIntent:
        intent = self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, currency),
            currency=currency.lower(),
            metadata={k: str(v) for k, v in metadata.items()},
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            idempotency_key=idempotency_key,
        )
        return ProviderIntent(
            provider_id=intent.id,
            status=normalize_status(intent.status),
            client_secret=intent.client_secret,
        )

    def confirm(self, provider_id: str, payment_method: str) -> ProviderResult:
        intent = self._call(
            "confirm",
            stripe.PaymentIntent.confirm,
            provider_id,
            payment_method=payment_method,
        )
        return self._result(intent)

    def refund(self, provider_id: str, amount: Decimal, reason: Optional[str] = None) -> ProviderResult:
        intent = self._call("retrieve", stripe.PaymentIntent.retrieve, provider_id)
        params: Dict[str, Any] = {
            "payment_intent": provider_id,
            "amount": to_minor_units(amount, intent.currency),
        }
        if reason in ("duplicate", "fraudulent", "requested_by_customer"):
            params["reason"] = reason
        refund = self._call("refund", stripe.Refund.create, **params)
        return ProviderResult(
            provider_id=provider_id,
            status=normalize_status(refund.status),
            amount=amount,
        )

    def retrieve(self, provider_id: str) -> ProviderResult:
        return self._result(self._call("retrieve", stripe.PaymentIntent.retrieve, provider_id))

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[ProviderResult]:
        if not self._webhook_secret:
            raise ProviderError("Stripe webhook secret is not configured", code="webhook_not_configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise ProviderError("Invalid webhook signature", code="invalid_signature") from exc
        except ValueError as exc:
            raise ProviderError(f"Invalid webhook payload: {exc}", code="invalid_payload") from exc

        if event["type"] not in _EVENT_STATUS:
            logger.debug(f"Ignoring Stripe event {event['type']}")
            return None

        result = self._result(event["data"]["object"])
        result.status = _EVENT_STATUS[event["type"]]
        return result
