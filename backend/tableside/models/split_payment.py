"""Split bill models - one split per bill-splitting event, one contribution per payer."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tableside.db.base import Base, TimestampMixin


class SplitType(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"
    BY_ORDER = "by_order"


class TipDistribution(str, Enum):
    EQUAL = "equal"
    PROPORTIONAL = "proportional"
    CUSTOM = "custom"


class SplitStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ContributionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class SplitPaymentSession(Base, TimestampMixin):
    __tablename__ = "split_payment_sessions"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_split_total_non_negative"),
        CheckConstraint("tip_amount >= 0", name="ck_split_tip_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("table_sessions.id"), nullable=False, index=True)
    split_type: Mapped[str] = mapped_column(String(20), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tip_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SplitStatus.PENDING.value)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    contributions: Mapped[List["SplitContribution"]] = relationship(
        "SplitContribution",
        back_populates="split_session",
        order_by="SplitContribution.id",
        cascade="all, delete-orphan",
    )


class SplitContribution(Base, TimestampMixin):
    """One payer's share; ``amount`` already includes ``tip_amount``."""

    __tablename__ = "split_contributions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_contribution_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    split_session_id: Mapped[int] = mapped_column(
        ForeignKey("split_payment_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Alias snapshot so the bill still reads after the diner leaves
    participant_name: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tip_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ContributionStatus.PENDING.value)
    # Provider-side id of the intent currently paying this share
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    split_session: Mapped[SplitPaymentSession] = relationship(
        "SplitPaymentSession", back_populates="contributions"
    )
