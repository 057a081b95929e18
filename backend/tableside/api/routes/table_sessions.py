"""Shared table session routes: check-in, join, leave and the group bill."""

from fastapi import APIRouter, Request

from tableside.api.deps import Bills, Coordinator
from tableside.core.rate_limit import limiter
from tableside.core.rbac import RequireStaff
from tableside.core.responses import list_response
from tableside.schemas.group_bill import GroupBillView
from tableside.schemas.table_session import (
    CheckInRequest,
    CheckInResponse,
    JoinSessionRequest,
    LeaveResponse,
    ParticipantResponse,
    RenameParticipantRequest,
    SessionResponse,
)

router = APIRouter()


@router.post("/check-in", response_model=CheckInResponse)
@limiter.limit("30/minute")
def check_in(request: Request, data: CheckInRequest, coordinator: Coordinator):
    """Scan-to-sit: seat the diner, opening a session when the table is free."""
    return coordinator.check_in(data.location_id, data.table_number, user_id=data.user_id)


@router.get("/{session_id}", response_model=SessionResponse)
@limiter.limit("60/minute")
def get_session(request: Request, session_id: int, coordinator: Coordinator):
    return coordinator.get_session(session_id)


@router.post("/{session_id}/join", response_model=ParticipantResponse)
@limiter.limit("30/minute")
def join_session(request: Request, session_id: int, data: JoinSessionRequest, coordinator: Coordinator):
    return coordinator.join_session(session_id, custom_alias=data.custom_alias, user_id=data.user_id)


@router.get("/{session_id}/participants")
@limiter.limit("60/minute")
def list_participants(request: Request, session_id: int, coordinator: Coordinator):
    return list_response(coordinator.list_participants(session_id))


@router.post("/{session_id}/end", response_model=SessionResponse)
@limiter.limit("30/minute")
def end_session(request: Request, session_id: int, coordinator: Coordinator, current_user: RequireStaff):
    return coordinator.end_session(session_id, staff_location_id=current_user.location_id)


@router.get("/{session_id}/bill", response_model=GroupBillView)
@limiter.limit("60/minute")
def group_bill(request: Request, session_id: int, bills: Bills):
    return bills.group_bill(session_id)


@router.post("/participants/{participant_id}/leave", response_model=LeaveResponse)
@limiter.limit("30/minute")
def leave_session(request: Request, participant_id: int, coordinator: Coordinator):
    return coordinator.leave(participant_id)


@router.patch("/participants/{participant_id}", response_model=ParticipantResponse)
@limiter.limit("30/minute")
def rename_participant(
    request: Request,
    participant_id: int,
    data: RenameParticipantRequest,
    coordinator: Coordinator,
):
    return coordinator.rename_participant(participant_id, data.alias)
