"""Typed frames exchanged over the location WebSocket."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tableside.models import CallPriority, CallType, WaiterPresence


class InboundEventType(str, Enum):
    JOIN_LOCATION = "join_location"
    LEAVE_LOCATION = "leave_location"
    CREATE_WAITER_CALL = "create_waiter_call"
    ACKNOWLEDGE_CALL = "acknowledge_call"
    RESOLVE_CALL = "resolve_call"
    UPDATE_WAITER_STATUS = "update_waiter_status"
    PING = "ping"


class ClientRole(str, Enum):
    CUSTOMER = "customer"
    WAITER = "waiter"
    KITCHEN = "kitchen"
    MANAGER = "manager"


class InboundFrame(BaseModel):
    type: InboundEventType
    data: Dict[str, Any] = Field(default_factory=dict)


class JoinLocation(BaseModel):
    role: ClientRole = ClientRole.CUSTOMER
    location_id: Optional[int] = None


class LeaveLocation(BaseModel):
    location_id: Optional[int] = None


class CreateWaiterCall(BaseModel):
    session_id: int
    participant_id: int
    call_type: CallType
    priority: CallPriority = CallPriority.MEDIUM
    message: Optional[str] = Field(None, max_length=500)


class AcknowledgeCall(BaseModel):
    call_id: int
    estimated_arrival_minutes: Optional[int] = Field(None, ge=0, le=120)


class ResolveCall(BaseModel):
    call_id: int
    resolution: str = Field(..., min_length=1, max_length=1000)
    satisfaction: Optional[int] = Field(None, ge=1, le=5)


class UpdateWaiterStatus(BaseModel):
    status: WaiterPresence


class Ping(BaseModel):
    pass


PAYLOAD_MODELS = {
    InboundEventType.JOIN_LOCATION: JoinLocation,
    InboundEventType.LEAVE_LOCATION: LeaveLocation,
    InboundEventType.CREATE_WAITER_CALL: CreateWaiterCall,
    InboundEventType.ACKNOWLEDGE_CALL: AcknowledgeCall,
    InboundEventType.RESOLVE_CALL: ResolveCall,
    InboundEventType.UPDATE_WAITER_STATUS: UpdateWaiterStatus,
    InboundEventType.PING: Ping,
}


@dataclass
class OutboundEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@dataclass
class DispatchResult:
    """What the socket loop should do after a frame: reply, then adjust topics."""

    replies: List[OutboundEvent] = field(default_factory=list)
    subscribe: List[str] = field(default_factory=list)
    unsubscribe: List[str] = field(default_factory=list)

    @classmethod
    def error(cls, kind: str, detail: Any) -> "DispatchResult":
        return cls(replies=[OutboundEvent("error", {"kind": kind, "detail": detail})])

    @property
    def refused(self) -> bool:
        return any(reply.type == "error" for reply in self.replies)
