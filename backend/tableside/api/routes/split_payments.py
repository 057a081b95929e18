"""Split bill routes and the payment provider webhook."""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from tableside.api.deps import Provider, SplitPayments
from tableside.core.exceptions import NotFound, ProviderError, ValidationError
from tableside.core.rate_limit import limiter
from tableside.core.rbac import RequireManager, RequireStaff
from tableside.core.responses import list_response
from tableside.schemas.split_payment import (
    PayContributionRequest,
    PaymentResponse,
    ProviderEventRequest,
    ReconcileResponse,
    RefundRequest,
    SplitCreate,
    SplitResponse,
    TipRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_BAD_EVENT_CODES = ("invalid_signature", "invalid_payload", "invalid_event")


@router.post("", response_model=SplitResponse, status_code=201)
@limiter.limit("30/minute")
def create_split(request: Request, data: SplitCreate, splits: SplitPayments):
    return splits.create_split(
        data.session_id,
        data.total_amount,
        data.split_type,
        participant_ids=data.participant_ids,
        custom_amounts=data.custom_amounts,
        currency=data.currency,
    )


@router.get("/sessions/{session_id}")
@limiter.limit("60/minute")
def list_splits(request: Request, session_id: int, splits: SplitPayments):
    return list_response(splits.list_splits(session_id))


@router.post("/webhook")
@limiter.limit("300/minute")
async def provider_webhook(
    request: Request,
    splits: SplitPayments,
    provider: Provider,
    stripe_signature: Optional[str] = Header(None),
):
    """Signed provider callback. Unknown or irrelevant events are acknowledged and ignored."""
    payload = await request.body()
    try:
        result = provider.parse_event(payload, stripe_signature)
    except ProviderError as e:
        if e.code in _BAD_EVENT_CODES:
            raise ValidationError(e.detail) from e
        raise
    if result is None:
        return {"received": True, "applied": False}

    try:
        split = await run_in_threadpool(splits.handle_provider_event, result)
    except NotFound:
        logger.warning(f"Webhook for unknown payment {result.provider_id}")
        return {"received": True, "applied": False}
    return {"received": True, "applied": True, "split_session_id": split.id, "status": split.status}


@router.post("/confirm", response_model=SplitResponse)
@limiter.limit("60/minute")
def confirm_payment(request: Request, data: ProviderEventRequest, splits: SplitPayments, current_user: RequireStaff):
    """Provider result relayed by a trusted client or the POS."""
    return splits.confirm_payment(
        data.provider_payment_id,
        data.status,
        payment_method=data.payment_method,
        failure_reason=data.failure_reason,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
@limiter.limit("10/minute")
def reconcile(
    request: Request,
    splits: SplitPayments,
    current_user: RequireManager,
    older_than_minutes: Optional[int] = Query(None, ge=0),
):
    return splits.reconcile_stale(older_than_minutes)


@router.get("/{split_id}", response_model=SplitResponse)
@limiter.limit("60/minute")
def get_split(request: Request, split_id: int, splits: SplitPayments):
    return splits.get_split(split_id)


@router.post("/{split_id}/tip", response_model=SplitResponse)
@limiter.limit("30/minute")
def add_tip(request: Request, split_id: int, data: TipRequest, splits: SplitPayments):
    return splits.add_tip(split_id, data.tip_amount, data.distribution, custom_tips=data.custom_tips)


@router.post("/{split_id}/pay", response_model=PaymentResponse)
@limiter.limit("20/minute")
def pay_contribution(request: Request, split_id: int, data: PayContributionRequest, splits: SplitPayments):
    return splits.pay_contribution(
        split_id,
        data.participant_id,
        data.payment_method,
        amount=data.amount,
        idempotency_key=data.idempotency_key,
    )


@router.post("/{split_id}/cancel", response_model=SplitResponse)
@limiter.limit("30/minute")
def cancel_split(request: Request, split_id: int, splits: SplitPayments, current_user: RequireStaff):
    return splits.cancel_split(split_id, staff_location_id=current_user.location_id)


@router.post("/{split_id}/refund", response_model=SplitResponse)
@limiter.limit("10/minute")
def refund_contribution(
    request: Request,
    split_id: int,
    data: RefundRequest,
    splits: SplitPayments,
    current_user: RequireManager,
):
    return splits.refund_contribution(
        split_id,
        data.participant_id,
        amount=data.amount,
        reason=data.reason,
        staff_location_id=current_user.location_id,
    )
