"""Orders placed by session participants.

The ordering flow itself belongs to the order service; this module only maps
the rows the bill and leave checks read.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from tableside.db.base import Base, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    PAID = "paid"
    CANCELLED = "cancelled"


# An order in one of these states no longer blocks its owner from leaving
TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.PAID.value,
    OrderStatus.CANCELLED.value,
})


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("table_sessions.id"), nullable=False, index=True)
    participant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
