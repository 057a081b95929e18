"""Waiter call schemas"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from tableside.models import CallPriority, CallType, WaiterPresence


class WaiterCallCreate(BaseModel):
    session_id: int
    participant_id: int
    call_type: CallType
    priority: CallPriority = CallPriority.MEDIUM
    message: Optional[str] = Field(None, max_length=500)


class AcknowledgeCallRequest(BaseModel):
    estimated_arrival_minutes: Optional[int] = Field(None, ge=0, le=120)


class ResolveCallRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=1000)
    satisfaction: Optional[int] = Field(None, ge=1, le=5)


class WaiterCallResponse(BaseModel):
    id: int
    session_id: int
    table_id: int
    table_number: str
    participant_id: Optional[int]
    location_id: int
    call_type: str
    priority: str
    message: Optional[str]
    status: str
    assigned_waiter_id: Optional[int]
    estimated_arrival_minutes: Optional[int]
    estimated_response_minutes: int
    created_at: datetime
    acknowledged_at: Optional[datetime]
    resolved_at: Optional[datetime]


class WaiterStatusUpdate(BaseModel):
    location_id: int
    status: WaiterPresence


class WaiterStatusResponse(BaseModel):
    waiter_id: int
    location_id: int
    status: str
    current_calls: int
    last_seen: datetime

    model_config = ConfigDict(from_attributes=True)


class WaiterStats(BaseModel):
    waiter_id: int
    resolved_today: int
    active_calls: int
    average_response_minutes: Optional[float]
    average_satisfaction: Optional[float]
