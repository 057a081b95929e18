"""Waiter call routes.

Diners create calls; everything else is staff-only and the waiter id is the
``sub`` of the caller's token.
"""

from fastapi import APIRouter, Query, Request

from tableside.api.deps import WaiterCalls
from tableside.core.rate_limit import limiter
from tableside.core.rbac import RequireStaff, ensure_location
from tableside.core.responses import list_response
from tableside.schemas.waiter_call import (
    AcknowledgeCallRequest,
    ResolveCallRequest,
    WaiterCallCreate,
    WaiterCallResponse,
    WaiterStats,
    WaiterStatusResponse,
    WaiterStatusUpdate,
)

router = APIRouter()


@router.post("", response_model=WaiterCallResponse, status_code=201)
@limiter.limit("20/minute")
def create_call(request: Request, data: WaiterCallCreate, calls: WaiterCalls):
    return calls.create_call(data)


@router.get("/active")
@limiter.limit("60/minute")
def list_active_calls(request: Request, calls: WaiterCalls, current_user: RequireStaff, location_id: int = Query(...)):
    """Open calls, most urgent first."""
    ensure_location(current_user, location_id)
    return list_response(calls.list_active(location_id))


@router.get("/mine")
@limiter.limit("60/minute")
def list_my_calls(request: Request, calls: WaiterCalls, current_user: RequireStaff, location_id: int = Query(...)):
    ensure_location(current_user, location_id)
    return list_response(calls.list_for_waiter(location_id, current_user.user_id))


@router.get("/waiters")
@limiter.limit("60/minute")
def list_waiters(request: Request, calls: WaiterCalls, current_user: RequireStaff, location_id: int = Query(...)):
    ensure_location(current_user, location_id)
    return list_response(calls.list_waiters(location_id))


@router.put("/waiters/me/status", response_model=WaiterStatusResponse)
@limiter.limit("30/minute")
def update_my_status(request: Request, data: WaiterStatusUpdate, calls: WaiterCalls, current_user: RequireStaff):
    ensure_location(current_user, data.location_id)
    return calls.set_waiter_status(current_user.user_id, data.location_id, data.status)


@router.get("/waiters/me/stats", response_model=WaiterStats)
@limiter.limit("60/minute")
def my_stats(request: Request, calls: WaiterCalls, current_user: RequireStaff):
    return calls.waiter_stats(current_user.user_id)


@router.get("/waiters/{waiter_id}/stats", response_model=WaiterStats)
@limiter.limit("60/minute")
def waiter_stats(request: Request, waiter_id: int, calls: WaiterCalls, current_user: RequireStaff):
    return calls.waiter_stats(waiter_id)


@router.get("/{call_id}", response_model=WaiterCallResponse)
@limiter.limit("60/minute")
def get_call(request: Request, call_id: int, calls: WaiterCalls):
    return calls.get_call(call_id)


@router.post("/{call_id}/acknowledge", response_model=WaiterCallResponse)
@limiter.limit("30/minute")
def acknowledge_call(
    request: Request,
    call_id: int,
    data: AcknowledgeCallRequest,
    calls: WaiterCalls,
    current_user: RequireStaff,
):
    return calls.acknowledge(
        call_id,
        current_user.user_id,
        data.estimated_arrival_minutes,
        staff_location_id=current_user.location_id,
    )


@router.post("/{call_id}/start", response_model=WaiterCallResponse)
@limiter.limit("30/minute")
def start_call(request: Request, call_id: int, calls: WaiterCalls, current_user: RequireStaff):
    return calls.start(call_id, current_user.user_id, staff_location_id=current_user.location_id)


@router.post("/{call_id}/resolve", response_model=WaiterCallResponse)
@limiter.limit("30/minute")
def resolve_call(
    request: Request,
    call_id: int,
    data: ResolveCallRequest,
    calls: WaiterCalls,
    current_user: RequireStaff,
):
    return calls.resolve(
        call_id,
        current_user.user_id,
        data.resolution,
        data.satisfaction,
        staff_location_id=current_user.location_id,
    )
