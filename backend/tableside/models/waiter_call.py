"""Waiter call models - calls, their responses, and waiter presence."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tableside.db.base import Base, utcnow


class CallType(str, Enum):
    ASSISTANCE = "assistance"
    BILL = "bill"
    COMPLAINT = "complaint"
    ORDER_READY = "order_ready"
    REFILL = "refill"
    OTHER = "other"


class CallPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WaiterCallStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class WaiterPresence(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    BREAK = "break"
    OFFLINE = "offline"


ACTIVE_CALL_STATUSES = (
    WaiterCallStatus.PENDING.value,
    WaiterCallStatus.ACKNOWLEDGED.value,
    WaiterCallStatus.IN_PROGRESS.value,
)


class WaiterCall(Base):
    """A diner's request for staff attention."""

    __tablename__ = "waiter_calls"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("table_sessions.id"), nullable=False, index=True)
    table_id: Mapped[int] = mapped_column(ForeignKey("tables.id"), nullable=False, index=True)
    participant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True
    )
    location_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    call_type: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default=CallPriority.MEDIUM.value)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WaiterCallStatus.PENDING.value, index=True
    )
    assigned_waiter_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    estimated_arrival_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    table = relationship("Table")
    participant = relationship("SessionParticipant")
    response: Mapped[Optional["CallResponse"]] = relationship(
        "CallResponse", back_populates="call", uselist=False
    )


class CallResponse(Base):
    """How a resolved call went; written together with the resolve."""

    __tablename__ = "call_responses"
    __table_args__ = (
        CheckConstraint("response_time_seconds >= 0", name="ck_call_responses_time"),
        CheckConstraint(
            "satisfaction IS NULL OR (satisfaction BETWEEN 1 AND 5)",
            name="ck_call_responses_satisfaction",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    call_id: Mapped[int] = mapped_column(ForeignKey("waiter_calls.id"), nullable=False, unique=True)
    waiter_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    response_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    satisfaction: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    call: Mapped[WaiterCall] = relationship("WaiterCall", back_populates="response")


class WaiterStatus(Base):
    """Presence and workload counter for a waiter on the floor."""

    __tablename__ = "waiter_status"

    waiter_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    location_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WaiterPresence.AVAILABLE.value)
    current_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
