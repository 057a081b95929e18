"""Service factories for route dependencies.

The payment provider and the notification publisher are built once in the
application lifespan and live on ``app.state``; everything else is created
per request around the request's database session.
"""

from typing import Annotated

from fastapi import Depends, Request

from tableside.core.config import settings
from tableside.db.session import DbSession
from tableside.services.alias_service import AliasGenerator
from tableside.services.bill_aggregator import BillAggregator
from tableside.services.notification_service import NotificationPublisher, NullPublisher
from tableside.services.payment_providers import PaymentProvider
from tableside.services.session_coordinator import SessionCoordinator
from tableside.services.split_payment_service import SplitPaymentService
from tableside.services.table_service import TableService
from tableside.services.waiter_call_service import WaiterCallService


def get_publisher(request: Request) -> NotificationPublisher:
    return getattr(request.app.state, "notifier", None) or NullPublisher()


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


Publisher = Annotated[NotificationPublisher, Depends(get_publisher)]
Provider = Annotated[PaymentProvider, Depends(get_payment_provider)]


def get_session_coordinator(db: DbSession, publisher: Publisher) -> SessionCoordinator:
    return SessionCoordinator(db, publisher, alias_generator=AliasGenerator(max_attempts=settings.alias_max_attempts))


def get_table_service(db: DbSession) -> TableService:
    return TableService(db)


def get_waiter_call_service(db: DbSession, publisher: Publisher) -> WaiterCallService:
    return WaiterCallService(db, publisher)


def get_split_payment_service(db: DbSession, publisher: Publisher, provider: Provider) -> SplitPaymentService:
    return SplitPaymentService(db, provider, publisher, config=settings)


def get_bill_aggregator(db: DbSession) -> BillAggregator:
    return BillAggregator(db)


Coordinator = Annotated[SessionCoordinator, Depends(get_session_coordinator)]
Tables = Annotated[TableService, Depends(get_table_service)]
WaiterCalls = Annotated[WaiterCallService, Depends(get_waiter_call_service)]
SplitPayments = Annotated[SplitPaymentService, Depends(get_split_payment_service)]
Bills = Annotated[BillAggregator, Depends(get_bill_aggregator)]
