"""Seating diners at shared tables.

Every write in this module runs as one unit of work that starts by locking
the table row. Concurrent check-ins, joins and leaves on the same table
therefore serialize on that lock, and the occupancy count they read is the
one their insert is checked against.
"""

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tableside.core.exceptions import (
    CapacityExceeded,
    InvalidStateTransition,
    LocationForbidden,
    ParticipantNotFound,
    PendingOrdersExist,
    SessionNotFound,
    TableNotFound,
)
from tableside.core.metrics import metrics
from tableside.db.base import utcnow
from tableside.db.session import unit_of_work
from tableside.models import SessionParticipant, Table, TableSession
from tableside.schemas.table_session import (
    CheckInResponse,
    LeaveResponse,
    ParticipantResponse,
    SessionResponse,
    TableResponse,
)
from tableside.services.alias_service import AliasGenerator, validate_alias
from tableside.services.notification_service import (
    NotificationPublisher,
    customer_topic,
    location_topic,
    safe_publish,
)
from tableside.services.order_service import OrderService, SqlOrderService

logger = logging.getLogger(__name__)


class SessionCoordinator:
    def __init__(
        self,
        db: Session,
        publisher: NotificationPublisher,
        order_service: Optional[OrderService] = None,
        alias_generator: Optional[AliasGenerator] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.orders = order_service or SqlOrderService(db)
        self.aliases = alias_generator or AliasGenerator()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _lock_table(self, table_id: int) -> Table:
        table = (
            self.db.query(Table)
            .filter(Table.id == table_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if table is None:
            raise TableNotFound(table_id)
        return table

    def _lock_table_by_number(self, location_id: int, table_number: str) -> Table:
        table = (
            self.db.query(Table)
            .filter(
                Table.location_id == location_id,
                Table.number == str(table_number),
                Table.active.is_(True),
            )
            .with_for_update()
            .populate_existing()
            .first()
        )
        if table is None:
            raise TableNotFound(f"{table_number} at location {location_id}")
        return table

    def _active_session(self, table_id: int) -> Optional[TableSession]:
        return (
            self.db.query(TableSession)
            .filter(TableSession.table_id == table_id, TableSession.active.is_(True))
            .populate_existing()
            .first()
        )

    def _occupancy(self, table_id: int) -> int:
        return (
            self.db.query(func.count(SessionParticipant.id))
            .join(TableSession, SessionParticipant.session_id == TableSession.id)
            .filter(TableSession.table_id == table_id, TableSession.active.is_(True))
            .scalar()
        ) or 0

    def _participant_count(self, session_id: int) -> int:
        return (
            self.db.query(func.count(SessionParticipant.id))
            .filter(SessionParticipant.session_id == session_id)
            .scalar()
        ) or 0

    def _aliases(self, session_id: int, exclude_id: Optional[int] = None) -> List[str]:
        query = self.db.query(SessionParticipant.alias).filter(SessionParticipant.session_id == session_id)
        if exclude_id is not None:
            query = query.filter(SessionParticipant.id != exclude_id)
        return [alias for (alias,) in query.all()]

    def _seated_user(self, session_id: int, user_id: Optional[int]) -> Optional[SessionParticipant]:
        if user_id is None:
            return None
        return (
            self.db.query(SessionParticipant)
            .filter(SessionParticipant.session_id == session_id, SessionParticipant.user_id == user_id)
            .first()
        )

    def _load_session(self, session_id: int) -> TableSession:
        session = self.db.get(TableSession, session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _seat(self, table: Table, session: TableSession, alias: str, user_id: Optional[int]) -> SessionParticipant:
        occupancy = self._occupancy(table.id)
        if occupancy >= table.capacity:
            metrics.inc("capacity_rejections_total")
            raise CapacityExceeded(table.id, table.capacity)
        participant = SessionParticipant(
            session_id=session.id,
            user_id=user_id,
            alias=alias,
            joined_at=utcnow(),
        )
        self.db.add(participant)
        self.db.flush()
        return participant

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def check_in(self, location_id: int, table_number: str, user_id: Optional[int] = None) -> CheckInResponse:
        """Seat a diner at a table, opening a session if the table is free."""
        created = False
        rejoined = False
        with unit_of_work(self.db):
            table = self._lock_table_by_number(location_id, table_number)
            session = self._active_session(table.id)

            participant = self._seated_user(session.id, user_id) if session else None
            if participant is not None:
                rejoined = True
            else:
                if session is None:
                    session = TableSession(table_id=table.id, start_time=utcnow(), active=True)
                    self.db.add(session)
                    self.db.flush()
                    created = True
                alias = self.aliases.generate(self._aliases(session.id))
                participant = self._seat(table, session, alias, user_id)

            response = CheckInResponse(
                session_id=session.id,
                participant_id=participant.id,
                display_alias=participant.alias,
                participant_count=self._participant_count(session.id),
                session_created=created,
                table=TableResponse.model_validate(table),
            )

        if rejoined:
            return response

        metrics.inc("checkins_total")
        logger.info(
            f"Participant {response.participant_id} ({response.display_alias}) checked in to table "
            f"{table_number} at location {location_id}, session {response.session_id}"
        )
        topics = [location_topic(location_id), customer_topic(location_id)]
        if created:
            safe_publish(self.publisher, topics, "session_started", {
                "session_id": response.session_id,
                "table_id": response.table.id,
                "table_number": response.table.number,
            })
        safe_publish(self.publisher, topics, "participant_joined", {
            "session_id": response.session_id,
            "participant_id": response.participant_id,
            "alias": response.display_alias,
            "table_number": response.table.number,
            "participant_count": response.participant_count,
        })
        return response

    def join_session(
        self,
        session_id: int,
        custom_alias: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> ParticipantResponse:
        """Join a session directly, e.g. from a link shared by the party."""
        with unit_of_work(self.db):
            session = self._load_session(session_id)
            table = self._lock_table(session.table_id)
            self.db.refresh(session)
            if not session.active:
                raise InvalidStateTransition(f"Session {session_id} has ended", current="ended")

            existing = self._seated_user(session.id, user_id)
            if existing is not None:
                return ParticipantResponse.model_validate(existing)

            taken = self._aliases(session.id)
            alias = validate_alias(custom_alias, taken) if custom_alias else self.aliases.generate(taken)
            participant = self._seat(table, session, alias, user_id)
            response = ParticipantResponse.model_validate(participant)
            location_id = table.location_id
            count = self._participant_count(session.id)

        metrics.inc("checkins_total")
        logger.info(f"Participant {response.id} ({response.alias}) joined session {session_id}")
        safe_publish(
            self.publisher,
            [location_topic(location_id), customer_topic(location_id)],
            "participant_joined",
            {
                "session_id": session_id,
                "participant_id": response.id,
                "alias": response.alias,
                "participant_count": count,
            },
        )
        return response

    def leave(self, participant_id: int) -> LeaveResponse:
        """Remove a diner; the last one out ends the session."""
        with unit_of_work(self.db):
            row = (
                self.db.query(SessionParticipant.session_id, TableSession.table_id)
                .join(TableSession, SessionParticipant.session_id == TableSession.id)
                .filter(SessionParticipant.id == participant_id)
                .first()
            )
            if row is None:
                raise ParticipantNotFound(participant_id)
            session_id, table_id = row

            table = self._lock_table(table_id)
            participant = self.db.get(SessionParticipant, participant_id, populate_existing=True)
            if participant is None:
                raise ParticipantNotFound(participant_id)

            open_orders = self.orders.get_open_orders_for_participant(session_id, participant_id)
            if open_orders:
                raise PendingOrdersExist(participant_id, len(open_orders))

            alias = participant.alias
            self.db.delete(participant)
            self.db.flush()

            session = self.db.get(TableSession, session_id, populate_existing=True)
            remaining = self._participant_count(session_id)
            ended = False
            if remaining == 0 and session.active:
                session.active = False
                session.end_time = utcnow()
                ended = True
            location_id = table.location_id

        logger.info(f"Participant {participant_id} left session {session_id} (ended={ended})")
        topics = [location_topic(location_id), customer_topic(location_id)]
        safe_publish(self.publisher, topics, "participant_left", {
            "session_id": session_id,
            "participant_id": participant_id,
            "alias": alias,
            "participant_count": remaining,
        })
        if ended:
            safe_publish(self.publisher, topics, "session_ended", {"session_id": session_id, "reason": "empty"})
        return LeaveResponse(participant_id=participant_id, session_id=session_id, session_ended=ended)

    def end_session(self, session_id: int, staff_location_id: Optional[int] = None) -> SessionResponse:
        """Close a session regardless of who is still seated (staff action)."""
        with unit_of_work(self.db):
            session = self._load_session(session_id)
            table = self._lock_table(session.table_id)
            if staff_location_id is not None and table.location_id != staff_location_id:
                raise LocationForbidden(table.location_id)
            self.db.refresh(session)
            if not session.active:
                raise InvalidStateTransition(f"Session {session_id} has already ended", current="ended")
            session.active = False
            session.end_time = utcnow()
            self.db.flush()
            response = self._session_response(session, table)

        logger.info(f"Session {session_id} ended by staff")
        safe_publish(
            self.publisher,
            [location_topic(table.location_id), customer_topic(table.location_id)],
            "session_ended",
            {"session_id": session_id, "reason": "closed_by_staff"},
        )
        return response

    def rename_participant(self, participant_id: int, alias: str) -> ParticipantResponse:
        with unit_of_work(self.db):
            participant = self.db.get(SessionParticipant, participant_id)
            if participant is None:
                raise ParticipantNotFound(participant_id)
            table = self._lock_table(participant.session.table_id)
            new_alias = validate_alias(alias, self._aliases(participant.session_id, exclude_id=participant.id))
            old_alias = participant.alias
            participant.alias = new_alias
            self.db.flush()
            response = ParticipantResponse.model_validate(participant)

        safe_publish(
            self.publisher,
            [customer_topic(table.location_id)],
            "participant_renamed",
            {
                "session_id": response.session_id,
                "participant_id": participant_id,
                "old_alias": old_alias,
                "alias": new_alias,
            },
        )
        return response

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _session_response(self, session: TableSession, table: Table) -> SessionResponse:
        return SessionResponse(
            id=session.id,
            table_id=table.id,
            table_number=table.number,
            location_id=table.location_id,
            start_time=session.start_time,
            end_time=session.end_time,
            active=session.active,
            participants=[ParticipantResponse.model_validate(p) for p in session.participants],
        )

    def get_session(self, session_id: int) -> SessionResponse:
        session = self._load_session(session_id)
        return self._session_response(session, session.table)

    def get_active_session_for_table(self, table_id: int) -> Optional[SessionResponse]:
        table = self.db.get(Table, table_id)
        if table is None:
            raise TableNotFound(table_id)
        session = self._active_session(table_id)
        return self._session_response(session, table) if session else None

    def list_participants(self, session_id: int) -> List[ParticipantResponse]:
        session = self._load_session(session_id)
        return [ParticipantResponse.model_validate(p) for p in session.participants]
