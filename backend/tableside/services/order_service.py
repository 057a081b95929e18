"""Read-side boundary to the order service."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from tableside.models import Order, TERMINAL_ORDER_STATUSES


@dataclass(frozen=True)
class OrderRecord:
    id: int
    participant_id: Optional[int]
    status: str
    total_amount: Decimal
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in TERMINAL_ORDER_STATUSES


class OrderService(ABC):
    @abstractmethod
    def get_orders_by_session(self, session_id: int) -> List[OrderRecord]:
        ...

    def get_open_orders_for_participant(self, session_id: int, participant_id: int) -> List[OrderRecord]:
        return [
            o for o in self.get_orders_by_session(session_id)
            if o.participant_id == participant_id and o.is_open
        ]


class SqlOrderService(OrderService):
    """Reads orders from the shared ``orders`` table in the caller's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def get_orders_by_session(self, session_id: int) -> List[OrderRecord]:
        rows = (
            self.db.query(Order)
            .filter(Order.session_id == session_id)
            .order_by(Order.created_at.asc(), Order.id.asc())
            .all()
        )
        return [
            OrderRecord(
                id=o.id,
                participant_id=o.participant_id,
                status=o.status,
                total_amount=o.total_amount,
                subtotal=o.subtotal,
                tax_amount=o.tax_amount,
                created_at=o.created_at,
            )
            for o in rows
        ]
