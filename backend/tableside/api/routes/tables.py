"""Table management routes."""

from fastapi import APIRouter, Query, Request

from tableside.api.deps import Coordinator, Tables
from tableside.core.rate_limit import limiter
from tableside.core.rbac import RequireManager, ensure_location
from tableside.core.responses import list_response
from tableside.schemas.table_session import TableAvailability, TableCreate, TableResponse, TableUpdate

router = APIRouter()


@router.get("")
@limiter.limit("60/minute")
def list_tables(
    request: Request,
    tables: Tables,
    location_id: int = Query(...),
    include_inactive: bool = Query(False),
):
    """Tables at a location with their live occupancy."""
    items = tables.list_availability(location_id, include_inactive=include_inactive)
    return list_response(items)


@router.post("", response_model=TableResponse, status_code=201)
@limiter.limit("30/minute")
def create_table(request: Request, data: TableCreate, tables: Tables, current_user: RequireManager):
    ensure_location(current_user, data.location_id)
    return tables.create_table(data)


@router.get("/{table_id}", response_model=TableAvailability)
@limiter.limit("60/minute")
def get_table(request: Request, table_id: int, tables: Tables):
    return tables.get_availability(table_id)


@router.patch("/{table_id}", response_model=TableResponse)
@limiter.limit("30/minute")
def update_table(request: Request, table_id: int, data: TableUpdate, tables: Tables, current_user: RequireManager):
    return tables.update_table(table_id, data, staff_location_id=current_user.location_id)


@router.delete("/{table_id}", response_model=TableResponse)
@limiter.limit("30/minute")
def deactivate_table(request: Request, table_id: int, tables: Tables, current_user: RequireManager):
    """Soft-delete: the table keeps its session history."""
    return tables.deactivate_table(table_id, staff_location_id=current_user.location_id)


@router.get("/{table_id}/session")
@limiter.limit("60/minute")
def get_active_session(request: Request, table_id: int, coordinator: Coordinator):
    session = coordinator.get_active_session_for_table(table_id)
    return {"table_id": table_id, "session": session}
