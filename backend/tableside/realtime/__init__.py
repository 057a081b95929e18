from tableside.realtime.dispatcher import ConnectionContext, RealtimeDispatcher
from tableside.realtime.events import DispatchResult, InboundEventType, OutboundEvent

__all__ = [
    "ConnectionContext",
    "DispatchResult",
    "InboundEventType",
    "OutboundEvent",
    "RealtimeDispatcher",
]
