"""Table and table session schemas"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TableCreate(BaseModel):
    location_id: int
    number: str = Field(..., min_length=1, max_length=20)
    capacity: int = Field(4, gt=0, le=50)
    area: Optional[str] = Field(None, max_length=50)


class TableUpdate(BaseModel):
    number: Optional[str] = Field(None, min_length=1, max_length=20)
    capacity: Optional[int] = Field(None, gt=0, le=50)
    area: Optional[str] = Field(None, max_length=50)
    active: Optional[bool] = None


class TableResponse(BaseModel):
    id: int
    location_id: int
    number: str
    capacity: int
    area: Optional[str] = None
    active: bool

    model_config = ConfigDict(from_attributes=True)


class TableAvailability(TableResponse):
    current_occupancy: int
    available_seats: int
    is_available: bool
    session_id: Optional[int] = None


class ParticipantResponse(BaseModel):
    id: int
    session_id: int
    user_id: Optional[int] = None
    alias: str
    joined_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    id: int
    table_id: int
    table_number: str
    location_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    active: bool
    participants: List[ParticipantResponse] = []


class CheckInRequest(BaseModel):
    location_id: int
    table_number: str = Field(..., min_length=1, max_length=20)
    user_id: Optional[int] = None


class CheckInResponse(BaseModel):
    session_id: int
    participant_id: int
    display_alias: str
    participant_count: int
    session_created: bool
    table: TableResponse


class JoinSessionRequest(BaseModel):
    custom_alias: Optional[str] = Field(None, max_length=50)
    user_id: Optional[int] = None


class RenameParticipantRequest(BaseModel):
    alias: str = Field(..., min_length=1, max_length=50)


class LeaveResponse(BaseModel):
    participant_id: int
    session_id: int
    session_ended: bool
