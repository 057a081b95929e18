"""Split bill schemas"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from tableside.models import SplitType, TipDistribution


class ParticipantAmount(BaseModel):
    participant_id: int
    amount: Decimal


class SplitCreate(BaseModel):
    session_id: int
    total_amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    split_type: SplitType = SplitType.EQUAL
    participant_ids: Optional[List[int]] = None
    custom_amounts: Optional[List[ParticipantAmount]] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class TipRequest(BaseModel):
    tip_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    distribution: TipDistribution = TipDistribution.EQUAL
    custom_tips: Optional[List[ParticipantAmount]] = None


class PayContributionRequest(BaseModel):
    participant_id: int
    payment_method: str = Field(..., min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    idempotency_key: Optional[str] = Field(None, max_length=255)


class RefundRequest(BaseModel):
    participant_id: int
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=255)


class ProviderEventRequest(BaseModel):
    """Provider callback relayed by a trusted backend instead of a signed webhook."""

    provider_payment_id: str
    status: str
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None


class ContributionResponse(BaseModel):
    id: int
    participant_id: Optional[int]
    participant_name: str
    amount: Decimal
    tip_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    status: str
    payment_intent_id: Optional[str]
    payment_method: Optional[str]
    paid_at: Optional[datetime]


class SplitResponse(BaseModel):
    id: int
    session_id: int
    split_type: str
    total_amount: Decimal
    tip_amount: Decimal
    currency: str
    status: str
    created_at: datetime
    completed_at: Optional[datetime]
    contributions: List[ContributionResponse]


class PaymentResponse(BaseModel):
    contribution: ContributionResponse
    provider_payment_id: str
    client_secret: Optional[str]
    payment_status: str


class ReconcileResponse(BaseModel):
    checked: int
    updated: int
    errors: int
