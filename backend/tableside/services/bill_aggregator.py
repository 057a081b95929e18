"""Per-participant view of a session's bill."""

from collections import defaultdict
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tableside.core.config import settings
from tableside.core.exceptions import SessionNotFound
from tableside.core.money import ZERO, quantize, to_decimal
from tableside.models import OrderStatus, PaymentIntent, PaymentStatus, SplitPaymentSession, TableSession
from tableside.schemas.group_bill import BillOrder, GroupBillView, ParticipantBill
from tableside.services.order_service import OrderService, SqlOrderService
from tableside.services.split_payment_service import split_response


DEPARTED_ALIAS = "Departed guests"


class BillAggregator:
    def __init__(self, db: Session, order_service: Optional[OrderService] = None, currency: Optional[str] = None):
        self.db = db
        self.orders = order_service or SqlOrderService(db)
        self.default_currency = currency or settings.default_currency

    def _currency(self, session_id: int) -> str:
        latest = (
            self.db.query(SplitPaymentSession.currency)
            .filter(SplitPaymentSession.session_id == session_id)
            .order_by(SplitPaymentSession.id.desc())
            .first()
        )
        return latest[0] if latest else self.default_currency

    def _paid_by_participant(self, session_id: int) -> Dict[Optional[int], Decimal]:
        rows = (
            self.db.query(
                PaymentIntent.participant_id,
                func.sum(PaymentIntent.amount - PaymentIntent.refunded_amount),
            )
            .filter(
                PaymentIntent.session_id == session_id,
                PaymentIntent.status == PaymentStatus.SUCCEEDED.value,
            )
            .group_by(PaymentIntent.participant_id)
            .all()
        )
        return {pid: to_decimal(total or 0) for pid, total in rows}

    def group_bill(self, session_id: int) -> GroupBillView:
        """Orders and payments per participant, plus a bucket for everything nobody seated owns."""
        session = self.db.get(TableSession, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        currency = self._currency(session_id)

        participants = list(session.participants)
        known = {p.id for p in participants}

        orders = [o for o in self.orders.get_orders_by_session(session_id) if o.status != OrderStatus.CANCELLED.value]
        totals: Dict[Optional[int], Decimal] = defaultdict(lambda: ZERO)
        counts: Dict[Optional[int], int] = defaultdict(int)
        for order in orders:
            owner = order.participant_id if order.participant_id in known else None
            totals[owner] += to_decimal(order.total_amount)
            counts[owner] += 1

        paid: Dict[Optional[int], Decimal] = defaultdict(lambda: ZERO)
        for pid, amount in self._paid_by_participant(session_id).items():
            paid[pid if pid in known else None] += amount

        def bill(participant_id: Optional[int], alias: str) -> ParticipantBill:
            total = quantize(totals[participant_id], currency)
            settled = quantize(paid[participant_id], currency)
            return ParticipantBill(
                participant_id=participant_id,
                alias=alias,
                order_count=counts[participant_id],
                total_amount=total,
                paid_amount=settled,
                remaining_amount=total - settled,
            )

        bills = [bill(p.id, p.alias) for p in participants]
        if counts[None] or paid[None]:
            bills.append(bill(None, DEPARTED_ALIAS))

        total_amount = sum((b.total_amount for b in bills), ZERO)
        paid_amount = sum((b.paid_amount for b in bills), ZERO)
        splits = (
            self.db.query(SplitPaymentSession)
            .filter(SplitPaymentSession.session_id == session_id)
            .order_by(SplitPaymentSession.id.asc())
            .all()
        )

        return GroupBillView(
            session_id=session_id,
            table_number=session.table.number,
            active=session.active,
            currency=currency,
            participants=bills,
            orders=[
                BillOrder(
                    id=o.id,
                    participant_id=o.participant_id,
                    status=o.status,
                    total_amount=to_decimal(o.total_amount),
                    created_at=o.created_at,
                )
                for o in orders
            ],
            total_amount=total_amount,
            paid_amount=paid_amount,
            remaining_amount=total_amount - paid_amount,
            split_sessions=[split_response(self.db, s) for s in splits],
        )
