"""Group bill schemas"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from tableside.schemas.split_payment import SplitResponse


class BillOrder(BaseModel):
    id: int
    participant_id: Optional[int]
    status: str
    total_amount: Decimal
    created_at: Optional[datetime] = None


class ParticipantBill(BaseModel):
    """``participant_id`` is None for the bucket of orders and payments nobody seated owns any more."""

    participant_id: Optional[int]
    alias: str
    order_count: int
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal


class GroupBillView(BaseModel):
    session_id: int
    table_number: str
    active: bool
    currency: str
    participants: List[ParticipantBill]
    orders: List[BillOrder]
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    split_sessions: List[SplitResponse]
