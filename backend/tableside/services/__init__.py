# Services module

from tableside.services.session_coordinator import SessionCoordinator
from tableside.services.table_service import TableService
from tableside.services.waiter_call_service import (
    WaiterCallService,
    estimated_response_minutes,
)
from tableside.services.split_payment_service import SplitPaymentService
from tableside.services.bill_aggregator import BillAggregator
from tableside.services.notification_service import (
    ConnectionManager,
    NotificationPublisher,
    NullPublisher,
    WebSocketFanout,
)

__all__ = [
    "SessionCoordinator",
    "TableService",
    "WaiterCallService",
    "estimated_response_minutes",
    "SplitPaymentService",
    "BillAggregator",
    "ConnectionManager",
    "NotificationPublisher",
    "NullPublisher",
    "WebSocketFanout",
]
