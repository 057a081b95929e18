"""Table management and availability."""

import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tableside.core.exceptions import InvalidStateTransition, LocationForbidden, TableNotFound, ValidationError
from tableside.db.session import unit_of_work
from tableside.models import SessionParticipant, Table, TableSession
from tableside.schemas.table_session import TableAvailability, TableCreate, TableResponse, TableUpdate

logger = logging.getLogger(__name__)


class TableService:
    def __init__(self, db: Session):
        self.db = db

    def _get(self, table_id: int, lock: bool = False) -> Table:
        query = self.db.query(Table).filter(Table.id == table_id)
        if lock:
            query = query.with_for_update()
        table = query.first()
        if table is None:
            raise TableNotFound(table_id)
        return table

    def _number_taken(self, location_id: int, number: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Table.id).filter(Table.location_id == location_id, Table.number == number)
        if exclude_id is not None:
            query = query.filter(Table.id != exclude_id)
        return query.first() is not None

    def _active_sessions(self, table_ids: List[int]) -> Dict[int, TableSession]:
        if not table_ids:
            return {}
        sessions = (
            self.db.query(TableSession)
            .filter(TableSession.table_id.in_(table_ids), TableSession.active.is_(True))
            .all()
        )
        return {s.table_id: s for s in sessions}

    def create_table(self, data: TableCreate) -> TableResponse:
        with unit_of_work(self.db):
            if self._number_taken(data.location_id, data.number):
                raise ValidationError(f"Table {data.number} already exists at location {data.location_id}")
            table = Table(
                location_id=data.location_id,
                number=data.number,
                capacity=data.capacity,
                area=data.area,
                active=True,
            )
            self.db.add(table)
            self.db.flush()
            response = TableResponse.model_validate(table)
        logger.info(f"Created table {response.number} at location {response.location_id}")
        return response

    def update_table(self, table_id: int, data: TableUpdate, staff_location_id: Optional[int] = None) -> TableResponse:
        with unit_of_work(self.db):
            table = self._get(table_id, lock=True)
            if staff_location_id is not None and table.location_id != staff_location_id:
                raise LocationForbidden(table.location_id)
            changes = data.model_dump(exclude_unset=True)

            if "number" in changes and self._number_taken(table.location_id, changes["number"], exclude_id=table.id):
                raise ValidationError(f"Table {changes['number']} already exists at location {table.location_id}")

            session = self._active_sessions([table.id]).get(table.id)
            if session is not None:
                if changes.get("active") is False:
                    raise InvalidStateTransition(f"Table {table.number} has an active session", current="occupied")
                if "capacity" in changes:
                    seated = len(session.participants)
                    if changes["capacity"] < seated:
                        raise ValidationError(f"Capacity {changes['capacity']} is below the {seated} diners seated")

            for field, value in changes.items():
                setattr(table, field, value)
            self.db.flush()
            response = TableResponse.model_validate(table)
        return response

    def deactivate_table(self, table_id: int, staff_location_id: Optional[int] = None) -> TableResponse:
        return self.update_table(table_id, TableUpdate(active=False), staff_location_id)

    def list_availability(self, location_id: int, include_inactive: bool = False) -> List[TableAvailability]:
        query = self.db.query(Table).filter(Table.location_id == location_id)
        if not include_inactive:
            query = query.filter(Table.active.is_(True))
        tables = query.order_by(Table.number).all()
        sessions = self._active_sessions([t.id for t in tables])

        counts = dict(
            self.db.query(TableSession.table_id, func.count(SessionParticipant.id))
            .join(SessionParticipant, SessionParticipant.session_id == TableSession.id)
            .filter(TableSession.active.is_(True), TableSession.table_id.in_([t.id for t in tables] or [0]))
            .group_by(TableSession.table_id)
            .all()
        )
        return [self._availability(t, counts.get(t.id, 0), sessions.get(t.id)) for t in tables]

    def get_availability(self, table_id: int) -> TableAvailability:
        table = self._get(table_id)
        session = self._active_sessions([table.id]).get(table.id)
        occupancy = len(session.participants) if session else 0
        return self._availability(table, occupancy, session)

    @staticmethod
    def _availability(table: Table, occupancy: int, session: Optional[TableSession]) -> TableAvailability:
        return TableAvailability(
            id=table.id,
            location_id=table.location_id,
            number=table.number,
            capacity=table.capacity,
            area=table.area,
            active=table.active,
            current_occupancy=occupancy,
            available_seats=max(0, table.capacity - occupancy),
            is_available=table.active and occupancy < table.capacity,
            session_id=session.id if session else None,
        )
