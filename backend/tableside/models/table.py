"""Occupancy models - tables, shared sessions and their participants."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tableside.db.base import Base, TimestampMixin, utcnow


class Table(Base, TimestampMixin):
    """A physical table at a location.

    Tables are soft-deactivated; a table referenced by any session keeps its row.
    """

    __tablename__ = "tables"
    __table_args__ = (
        UniqueConstraint("location_id", "number", name="uq_tables_location_number"),
        CheckConstraint("capacity > 0", name="ck_tables_capacity_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    location_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    number: Mapped[str] = mapped_column(String(20), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    area: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # Main Floor, Bar, Patio
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    sessions: Mapped[List["TableSession"]] = relationship(
        "TableSession", back_populates="table", order_by="TableSession.id"
    )


class TableSession(Base):
    """The window during which diners share one table."""

    __tablename__ = "table_sessions"
    __table_args__ = (
        # At most one active session per table
        Index(
            "uq_table_sessions_one_active",
            "table_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    table_id: Mapped[int] = mapped_column(ForeignKey("tables.id"), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    table: Mapped[Table] = relationship("Table", back_populates="sessions")
    participants: Mapped[List["SessionParticipant"]] = relationship(
        "SessionParticipant",
        back_populates="session",
        order_by="SessionParticipant.id",
        passive_deletes=True,
    )


class SessionParticipant(Base):
    """A diner seated in a session, known to the others by a display alias."""

    __tablename__ = "session_participants"
    __table_args__ = (
        UniqueConstraint("session_id", "alias", name="uq_session_participants_alias"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("table_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    alias: Mapped[str] = mapped_column(String(50), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    session: Mapped[TableSession] = relationship("TableSession", back_populates="participants")
