"""Waiter call dispatch.

A call moves ``pending -> acknowledged -> (in_progress ->) resolved``. Each
transition is a conditional UPDATE on the current status, so two waiters
racing for the same call cannot both win; the loser gets
``InvalidStateTransition``. The waiter's workload counter changes in the same
unit of work as the transition that moves it.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.orm import Session

from tableside.core.exceptions import (
    CallNotFound,
    InvalidStateTransition,
    LocationForbidden,
    ParticipantNotFound,
    SessionNotFound,
    ValidationError,
)
from tableside.core.metrics import metrics
from tableside.db.base import as_aware, utcnow
from tableside.db.session import unit_of_work
from tableside.models import (
    ACTIVE_CALL_STATUSES,
    CallPriority,
    CallResponse,
    SessionParticipant,
    TableSession,
    WaiterCall,
    WaiterCallStatus,
    WaiterPresence,
    WaiterStatus,
)
from tableside.schemas.waiter_call import (
    WaiterCallCreate,
    WaiterCallResponse,
    WaiterStats,
    WaiterStatusResponse,
)
from tableside.services.notification_service import (
    NotificationPublisher,
    location_topic,
    safe_publish,
    waiter_topic,
)

logger = logging.getLogger(__name__)

PRIORITY_RANK = {
    CallPriority.URGENT.value: 1,
    CallPriority.HIGH.value: 2,
    CallPriority.MEDIUM.value: 3,
    CallPriority.LOW.value: 4,
}

BASE_RESPONSE_MINUTES = {
    CallPriority.URGENT.value: 2,
    CallPriority.HIGH.value: 5,
    CallPriority.MEDIUM.value: 10,
    CallPriority.LOW.value: 15,
}

_priority_order = case(PRIORITY_RANK, value=WaiterCall.priority, else_=len(PRIORITY_RANK) + 1)


def estimated_response_minutes(priority: str, created_at: datetime, now: Optional[datetime] = None) -> int:
    """Advisory minutes until a waiter shows up; never negative."""
    now = now or utcnow()
    elapsed_minutes = int((now - as_aware(created_at)).total_seconds() // 60)
    base = BASE_RESPONSE_MINUTES.get(priority, BASE_RESPONSE_MINUTES[CallPriority.MEDIUM.value])
    return max(0, base - elapsed_minutes)


class WaiterCallService:
    def __init__(self, db: Session, publisher: NotificationPublisher):
        self.db = db
        self.publisher = publisher

    def _get_call(self, call_id: int, staff_location_id: Optional[int] = None) -> WaiterCall:
        call = self.db.get(WaiterCall, call_id, populate_existing=True)
        if call is None:
            raise CallNotFound(call_id)
        if staff_location_id is not None and call.location_id != staff_location_id:
            raise LocationForbidden(call.location_id)
        return call

    def _build_response(self, call: WaiterCall, now: Optional[datetime] = None) -> WaiterCallResponse:
        return WaiterCallResponse(
            id=call.id,
            session_id=call.session_id,
            table_id=call.table_id,
            table_number=call.table.number,
            participant_id=call.participant_id,
            location_id=call.location_id,
            call_type=call.call_type,
            priority=call.priority,
            message=call.message,
            status=call.status,
            assigned_waiter_id=call.assigned_waiter_id,
            estimated_arrival_minutes=call.estimated_arrival_minutes,
            estimated_response_minutes=estimated_response_minutes(call.priority, call.created_at, now),
            created_at=call.created_at,
            acknowledged_at=call.acknowledged_at,
            resolved_at=call.resolved_at,
        )

    # ------------------------------------------------------------------
    # Workload
    # ------------------------------------------------------------------

    def _adjust_workload(self, waiter_id: int, location_id: int, delta: int) -> None:
        now = utcnow()
        result = self.db.execute(
            update(WaiterStatus)
            .where(WaiterStatus.waiter_id == waiter_id)
            .values(
                current_calls=case(
                    (WaiterStatus.current_calls + delta < 0, 0),
                    else_=WaiterStatus.current_calls + delta,
                ),
                last_seen=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.add(WaiterStatus(
                waiter_id=waiter_id,
                location_id=location_id,
                status=WaiterPresence.BUSY.value if delta > 0 else WaiterPresence.AVAILABLE.value,
                current_calls=max(0, delta),
                last_seen=now,
            ))
            self.db.flush()
            return

        if delta > 0:
            self.db.execute(
                update(WaiterStatus)
                .where(WaiterStatus.waiter_id == waiter_id, WaiterStatus.status == WaiterPresence.AVAILABLE.value)
                .values(status=WaiterPresence.BUSY.value)
                .execution_options(synchronize_session=False)
            )
        else:
            self.db.execute(
                update(WaiterStatus)
                .where(WaiterStatus.waiter_id == waiter_id, WaiterStatus.current_calls == 0)
                .values(status=WaiterPresence.AVAILABLE.value)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create_call(self, request: WaiterCallCreate) -> WaiterCallResponse:
        with unit_of_work(self.db):
            session = self.db.get(TableSession, request.session_id)
            if session is None:
                raise SessionNotFound(request.session_id)
            if not session.active:
                raise InvalidStateTransition(f"Session {session.id} has ended", current="ended")

            participant = self.db.get(SessionParticipant, request.participant_id)
            if participant is None:
                raise ParticipantNotFound(request.participant_id)
            if participant.session_id != session.id:
                raise ValidationError(f"Participant {participant.id} is not part of session {session.id}")

            call = WaiterCall(
                session_id=session.id,
                table_id=session.table_id,
                participant_id=participant.id,
                location_id=session.table.location_id,
                call_type=request.call_type.value,
                priority=request.priority.value,
                message=request.message,
                status=WaiterCallStatus.PENDING.value,
                created_at=utcnow(),
            )
            self.db.add(call)
            self.db.flush()
            response = self._build_response(call)
            alias = participant.alias

        metrics.inc("waiter_calls_total", priority=response.priority)
        logger.info(
            f"Waiter call {response.id} ({response.call_type}/{response.priority}) "
            f"from table {response.table_number}"
        )
        safe_publish(self.publisher, [waiter_topic(response.location_id)], "waiter_call_created", {
            **response.model_dump(),
            "participant_alias": alias,
        })
        return response

    def acknowledge(
        self,
        call_id: int,
        waiter_id: int,
        estimated_arrival_minutes: Optional[int] = None,
        staff_location_id: Optional[int] = None,
    ) -> WaiterCallResponse:
        with unit_of_work(self.db):
            call = self._get_call(call_id, staff_location_id)
            result = self.db.execute(
                update(WaiterCall)
                .where(WaiterCall.id == call_id, WaiterCall.status == WaiterCallStatus.PENDING.value)
                .values(
                    status=WaiterCallStatus.ACKNOWLEDGED.value,
                    assigned_waiter_id=waiter_id,
                    acknowledged_at=utcnow(),
                    estimated_arrival_minutes=estimated_arrival_minutes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.refresh(call)
                raise InvalidStateTransition(
                    f"Call {call_id} is {call.status}, only pending calls can be acknowledged",
                    current=call.status,
                )
            self._adjust_workload(waiter_id, call.location_id, +1)
            self.db.refresh(call)
            response = self._build_response(call)

        logger.info(f"Waiter {waiter_id} acknowledged call {call_id}")
        safe_publish(self.publisher, [location_topic(response.location_id)], "waiter_call_acknowledged", {
            "call_id": call_id,
            "waiter_id": waiter_id,
            "table_number": response.table_number,
            "estimated_arrival_minutes": estimated_arrival_minutes,
        })
        return response

    def start(self, call_id: int, waiter_id: int, staff_location_id: Optional[int] = None) -> WaiterCallResponse:
        """Mark an acknowledged call as being worked on."""
        with unit_of_work(self.db):
            call = self._get_call(call_id, staff_location_id)
            if call.assigned_waiter_id is not None and call.assigned_waiter_id != waiter_id:
                raise InvalidStateTransition(
                    f"Call {call_id} is assigned to another waiter", current=call.status
                )
            result = self.db.execute(
                update(WaiterCall)
                .where(
                    WaiterCall.id == call_id,
                    WaiterCall.status == WaiterCallStatus.ACKNOWLEDGED.value,
                    WaiterCall.assigned_waiter_id == waiter_id,
                )
                .values(status=WaiterCallStatus.IN_PROGRESS.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.refresh(call)
                raise InvalidStateTransition(
                    f"Call {call_id} is {call.status}, only acknowledged calls can be started",
                    current=call.status,
                )
            self.db.refresh(call)
            response = self._build_response(call)

        safe_publish(self.publisher, [location_topic(response.location_id)], "waiter_call_in_progress", {
            "call_id": call_id,
            "waiter_id": waiter_id,
            "table_number": response.table_number,
        })
        return response

    def resolve(
        self,
        call_id: int,
        waiter_id: int,
        resolution: str,
        satisfaction: Optional[int] = None,
        staff_location_id: Optional[int] = None,
    ) -> WaiterCallResponse:
        if satisfaction is not None and not 1 <= satisfaction <= 5:
            raise ValidationError("Satisfaction must be between 1 and 5")

        with unit_of_work(self.db):
            call = self._get_call(call_id, staff_location_id)
            if call.status == WaiterCallStatus.PENDING.value:
                raise InvalidStateTransition(f"Call {call_id} must be acknowledged before it is resolved", current=call.status)
            if call.assigned_waiter_id != waiter_id:
                raise InvalidStateTransition(f"Call {call_id} is assigned to another waiter", current=call.status)

            now = utcnow()
            result = self.db.execute(
                update(WaiterCall)
                .where(
                    WaiterCall.id == call_id,
                    WaiterCall.assigned_waiter_id == waiter_id,
                    WaiterCall.status.in_([
                        WaiterCallStatus.ACKNOWLEDGED.value,
                        WaiterCallStatus.IN_PROGRESS.value,
                    ]),
                )
                .values(status=WaiterCallStatus.RESOLVED.value, resolved_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.refresh(call)
                raise InvalidStateTransition(f"Call {call_id} is already {call.status}", current=call.status)

            started = as_aware(call.acknowledged_at or call.created_at)
            response_seconds = max(0, int((now - started).total_seconds()))
            self.db.add(CallResponse(
                call_id=call_id,
                waiter_id=waiter_id,
                response_time_seconds=response_seconds,
                satisfaction=satisfaction,
                resolution=resolution,
                created_at=now,
            ))
            self._adjust_workload(waiter_id, call.location_id, -1)
            self.db.flush()
            self.db.refresh(call)
            response = self._build_response(call, now)

        logger.info(f"Waiter {waiter_id} resolved call {call_id} in {response_seconds}s")
        safe_publish(self.publisher, [location_topic(response.location_id)], "waiter_call_resolved", {
            "call_id": call_id,
            "waiter_id": waiter_id,
            "table_number": response.table_number,
            "resolution": resolution,
            "response_time_seconds": response_seconds,
        })
        return response

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_call(self, call_id: int) -> WaiterCallResponse:
        return self._build_response(self._get_call(call_id))

    def list_active(self, location_id: int) -> List[WaiterCallResponse]:
        """Open calls, most urgent first and oldest first within a priority."""
        calls = (
            self.db.query(WaiterCall)
            .filter(WaiterCall.location_id == location_id, WaiterCall.status.in_(ACTIVE_CALL_STATUSES))
            .order_by(_priority_order, WaiterCall.created_at.asc(), WaiterCall.id.asc())
            .all()
        )
        now = utcnow()
        return [self._build_response(c, now) for c in calls]

    def list_for_waiter(self, location_id: int, waiter_id: int) -> List[WaiterCallResponse]:
        """Unclaimed calls plus the ones this waiter is handling."""
        calls = (
            self.db.query(WaiterCall)
            .filter(
                WaiterCall.location_id == location_id,
                or_(
                    WaiterCall.status == WaiterCallStatus.PENDING.value,
                    and_(
                        WaiterCall.assigned_waiter_id == waiter_id,
                        WaiterCall.status.in_([
                            WaiterCallStatus.ACKNOWLEDGED.value,
                            WaiterCallStatus.IN_PROGRESS.value,
                        ]),
                    ),
                ),
            )
            .order_by(_priority_order, WaiterCall.created_at.asc(), WaiterCall.id.asc())
            .all()
        )
        now = utcnow()
        return [self._build_response(c, now) for c in calls]

    # ------------------------------------------------------------------
    # Waiter presence
    # ------------------------------------------------------------------

    def set_waiter_status(self, waiter_id: int, location_id: int, status: WaiterPresence) -> WaiterStatusResponse:
        with unit_of_work(self.db):
            row = self.db.get(WaiterStatus, waiter_id, with_for_update=True, populate_existing=True)
            if row is None:
                row = WaiterStatus(waiter_id=waiter_id, location_id=location_id, current_calls=0)
                self.db.add(row)
            row.location_id = location_id
            row.status = status.value
            row.last_seen = utcnow()
            self.db.flush()
            response = WaiterStatusResponse.model_validate(row)

        safe_publish(self.publisher, [location_topic(location_id)], "waiter_status_changed", {
            "waiter_id": waiter_id,
            "status": response.status,
            "current_calls": response.current_calls,
        })
        return response

    def list_waiters(self, location_id: int) -> List[WaiterStatusResponse]:
        rows = (
            self.db.query(WaiterStatus)
            .filter(WaiterStatus.location_id == location_id)
            .order_by(WaiterStatus.current_calls.asc(), WaiterStatus.waiter_id.asc())
            .all()
        )
        return [WaiterStatusResponse.model_validate(r) for r in rows]

    def waiter_stats(self, waiter_id: int) -> WaiterStats:
        day_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        resolved_today, avg_seconds, avg_satisfaction = (
            self.db.query(
                func.count(CallResponse.id),
                func.avg(CallResponse.response_time_seconds),
                func.avg(CallResponse.satisfaction),
            )
            .filter(CallResponse.waiter_id == waiter_id, CallResponse.created_at >= day_start)
            .one()
        )
        status = self.db.get(WaiterStatus, waiter_id, populate_existing=True)
        return WaiterStats(
            waiter_id=waiter_id,
            resolved_today=resolved_today or 0,
            active_calls=status.current_calls if status else 0,
            average_response_minutes=round(float(avg_seconds) / 60, 1) if avg_seconds is not None else None,
            average_satisfaction=round(float(avg_satisfaction), 2) if avg_satisfaction is not None else None,
        )
