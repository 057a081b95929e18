"""Routes inbound WebSocket frames to the services.

The dispatcher never touches a socket. It returns a ``DispatchResult`` and
the endpoint in ``tableside.main`` sends the replies and applies the
subscribe/unsubscribe directives.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from tableside.core.exceptions import ServiceError
from tableside.core.rbac import TokenData
from tableside.realtime.events import (
    PAYLOAD_MODELS,
    AcknowledgeCall,
    ClientRole,
    CreateWaiterCall,
    DispatchResult,
    InboundEventType,
    InboundFrame,
    JoinLocation,
    LeaveLocation,
    OutboundEvent,
    ResolveCall,
    UpdateWaiterStatus,
)
from tableside.schemas.waiter_call import WaiterCallCreate
from tableside.services.notification_service import (
    NotificationPublisher,
    customer_topic,
    kitchen_topic,
    location_topic,
    user_topic,
    waiter_topic,
)
from tableside.services.waiter_call_service import WaiterCallService

logger = logging.getLogger(__name__)

ROLE_TOPICS: Dict[ClientRole, List[Callable[[int], str]]] = {
    ClientRole.CUSTOMER: [customer_topic],
    ClientRole.WAITER: [waiter_topic, location_topic],
    ClientRole.KITCHEN: [kitchen_topic],
    ClientRole.MANAGER: [location_topic, waiter_topic, customer_topic, kitchen_topic],
}


@dataclass
class ConnectionContext:
    """Who is on the other end of a socket. ``user`` is None for diners."""

    location_id: int
    user: Optional[TokenData] = None


class RealtimeDispatcher:
    def __init__(self, session_factory: Callable[[], Session], publisher: NotificationPublisher):
        self.session_factory = session_factory
        self.publisher = publisher
        self._handlers = {
            InboundEventType.JOIN_LOCATION: self._join_location,
            InboundEventType.LEAVE_LOCATION: self._leave_location,
            InboundEventType.CREATE_WAITER_CALL: self._create_waiter_call,
            InboundEventType.ACKNOWLEDGE_CALL: self._acknowledge_call,
            InboundEventType.RESOLVE_CALL: self._resolve_call,
            InboundEventType.UPDATE_WAITER_STATUS: self._update_waiter_status,
            InboundEventType.PING: self._ping,
        }

    @contextmanager
    def _calls(self) -> Iterator[WaiterCallService]:
        db = self.session_factory()
        try:
            yield WaiterCallService(db, self.publisher)
        finally:
            db.close()

    def dispatch(self, context: ConnectionContext, raw: Any) -> DispatchResult:
        """Handle one decoded JSON frame. Errors come back as ``error`` replies."""
        try:
            frame = InboundFrame.model_validate(raw)
        except PydanticValidationError as e:
            return DispatchResult.error("invalid_frame", jsonable_encoder(e.errors(include_url=False)))

        try:
            payload = PAYLOAD_MODELS[frame.type].model_validate(frame.data)
        except PydanticValidationError as e:
            return DispatchResult.error("validation_error", jsonable_encoder(e.errors(include_url=False)))

        try:
            return self._handlers[frame.type](context, payload)
        except ServiceError as e:
            logger.info(f"Realtime {frame.type.value} refused: {e.detail}")
            return DispatchResult.error(e.kind, e.detail)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _staff(context: ConnectionContext, location_id: Optional[int] = None) -> Optional[DispatchResult]:
        if context.user is None:
            return DispatchResult.error("unauthorized", "Staff token required")
        location_id = context.location_id if location_id is None else location_id
        if not context.user.can_access_location(location_id):
            return DispatchResult.error("forbidden", f"Token is not valid for location {location_id}")
        return None

    @staticmethod
    def _location(context: ConnectionContext, requested: Optional[int]) -> int:
        return context.location_id if requested is None else requested

    def _join_location(self, context: ConnectionContext, payload: JoinLocation) -> DispatchResult:
        location_id = self._location(context, payload.location_id)
        if payload.role != ClientRole.CUSTOMER:
            refused = self._staff(context, location_id)
            if refused:
                return refused

        topics = [topic(location_id) for topic in ROLE_TOPICS[payload.role]]
        if context.user is not None:
            topics.append(user_topic(context.user.user_id))
        return DispatchResult(
            replies=[OutboundEvent("joined", {"location_id": location_id, "role": payload.role.value, "topics": topics})],
            subscribe=topics,
        )

    def _leave_location(self, context: ConnectionContext, payload: LeaveLocation) -> DispatchResult:
        location_id = self._location(context, payload.location_id)
        topics = [topic(location_id) for topic in ROLE_TOPICS[ClientRole.MANAGER]]
        return DispatchResult(
            replies=[OutboundEvent("left", {"location_id": location_id})],
            unsubscribe=topics,
        )

    def _create_waiter_call(self, context: ConnectionContext, payload: CreateWaiterCall) -> DispatchResult:
        with self._calls() as calls:
            call = calls.create_call(WaiterCallCreate(**payload.model_dump()))
        return DispatchResult(replies=[OutboundEvent("waiter_call_created", jsonable_encoder(call))])

    def _acknowledge_call(self, context: ConnectionContext, payload: AcknowledgeCall) -> DispatchResult:
        refused = self._staff(context)
        if refused:
            return refused
        with self._calls() as calls:
            call = calls.acknowledge(
                payload.call_id,
                context.user.user_id,
                payload.estimated_arrival_minutes,
                staff_location_id=context.user.location_id,
            )
        return DispatchResult(replies=[OutboundEvent("waiter_call_acknowledged", jsonable_encoder(call))])

    def _resolve_call(self, context: ConnectionContext, payload: ResolveCall) -> DispatchResult:
        refused = self._staff(context)
        if refused:
            return refused
        with self._calls() as calls:
            call = calls.resolve(
                payload.call_id,
                context.user.user_id,
                payload.resolution,
                payload.satisfaction,
                staff_location_id=context.user.location_id,
            )
        return DispatchResult(replies=[OutboundEvent("waiter_call_resolved", jsonable_encoder(call))])

    def _update_waiter_status(self, context: ConnectionContext, payload: UpdateWaiterStatus) -> DispatchResult:
        refused = self._staff(context)
        if refused:
            return refused
        with self._calls() as calls:
            status = calls.set_waiter_status(context.user.user_id, context.location_id, payload.status)
        return DispatchResult(replies=[OutboundEvent("waiter_status_updated", jsonable_encoder(status))])

    def _ping(self, context: ConnectionContext, payload: BaseModel) -> DispatchResult:
        return DispatchResult(replies=[OutboundEvent("pong")])
