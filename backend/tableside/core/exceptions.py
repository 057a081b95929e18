"""Domain errors raised by services and rendered by the API layer.

Every error carries a machine-readable ``kind`` and the HTTP status the
exception handler in ``tableside.main`` answers with.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for all domain errors."""

    kind = "service_error"
    status_code = 400

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class NotFound(ServiceError):
    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class TableNotFound(NotFound):
    kind = "table_not_found"

    def __init__(self, entity_id):
        super().__init__("Table", entity_id)


class SessionNotFound(NotFound):
    kind = "session_not_found"

    def __init__(self, entity_id):
        super().__init__("Session", entity_id)


class ParticipantNotFound(NotFound):
    kind = "participant_not_found"

    def __init__(self, entity_id):
        super().__init__("Participant", entity_id)


class CallNotFound(NotFound):
    kind = "call_not_found"

    def __init__(self, entity_id):
        super().__init__("Waiter call", entity_id)


class SplitNotFound(NotFound):
    kind = "split_not_found"

    def __init__(self, entity_id):
        super().__init__("Split session", entity_id)


class CapacityExceeded(ServiceError):
    """Raised when a table already seats as many diners as it has chairs."""

    kind = "capacity_exceeded"
    status_code = 409

    def __init__(self, table_id: int, capacity: int):
        self.table_id = table_id
        self.capacity = capacity
        super().__init__(f"Table is at full capacity ({capacity} seats)")


class AliasExhausted(ServiceError):
    kind = "alias_exhausted"
    status_code = 409

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique alias after {attempts} attempts")


class InvalidStateTransition(ServiceError):
    kind = "invalid_state_transition"
    status_code = 409

    def __init__(self, detail: str, current: Optional[str] = None):
        self.current = current
        super().__init__(detail)


class PendingOrdersExist(ServiceError):
    kind = "pending_orders_exist"
    status_code = 409

    def __init__(self, participant_id: int, count: int):
        self.participant_id = participant_id
        self.count = count
        super().__init__(
            f"Cannot leave session with {count} pending order(s). "
            "Transfer them or wait for completion."
        )


class ValidationError(ServiceError):
    kind = "validation_error"
    status_code = 400


class LocationForbidden(ServiceError):
    """A staff token bound to one location used against another."""

    kind = "forbidden"
    status_code = 403

    def __init__(self, location_id: int):
        self.location_id = location_id
        super().__init__(f"Token is not valid for location {location_id}")


class ProviderError(ServiceError):
    """Payment provider rejected or failed a call.

    A decline (normalized status ``failed``/``cancelled``) is the payer's
    problem and answers 402; anything else is a dependency failure (502).
    """

    kind = "provider_error"

    def __init__(self, detail: str, provider_status: Optional[str] = None, code: Optional[str] = None):
        self.provider_status = provider_status
        self.code = code
        super().__init__(detail)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.provider_status in ("failed", "cancelled"):
            return 402
        return 502


class ProviderTimeout(ServiceError):
    kind = "provider_timeout"
    status_code = 504

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Payment provider did not answer {operation} within {timeout:g}s")
