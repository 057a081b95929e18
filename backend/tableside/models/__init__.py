"""SQLAlchemy models."""

from tableside.models.table import Table, TableSession, SessionParticipant
from tableside.models.waiter_call import (
    WaiterCall,
    CallResponse,
    WaiterStatus,
    CallType,
    CallPriority,
    WaiterCallStatus,
    WaiterPresence,
    ACTIVE_CALL_STATUSES,
)
from tableside.models.split_payment import (
    SplitPaymentSession,
    SplitContribution,
    SplitType,
    TipDistribution,
    SplitStatus,
    ContributionStatus,
)
from tableside.models.payment import PaymentIntent, PaymentStatus
from tableside.models.order import Order, OrderStatus, TERMINAL_ORDER_STATUSES
