"""Role-Based Access Control (RBAC) utilities."""

from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from tableside.core.exceptions import LocationForbidden
from tableside.core.security import decode_access_token


class UserRole(str, Enum):
    """Staff roles carried in the ``role`` claim."""

    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"


# Role hierarchy: owner > manager > staff
ROLE_HIERARCHY = {
    UserRole.OWNER: 3,
    UserRole.MANAGER: 2,
    UserRole.STAFF: 1,
}


class TokenData:
    """Decoded token data.

    Attributes:
        user_id: The staff member's id (the waiter id for call handling).
        role: The staff member's role.
        location_id: Location the token was issued for, if any.
    """

    def __init__(self, user_id: int, role: UserRole, location_id: Optional[int] = None):
        self.user_id = user_id
        self.id = user_id
        self.role = role
        self.location_id = location_id

    def can_access_location(self, location_id: int) -> bool:
        """Tokens without a location claim work everywhere."""
        return self.location_id is None or self.location_id == location_id


def ensure_location(user: TokenData, location_id: int) -> None:
    if not user.can_access_location(location_id):
        raise LocationForbidden(location_id)


def token_from_request(request: Request) -> Optional[str]:
    """Bearer header first, then the ``access_token`` cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            return token
    return request.cookies.get("access_token")


def token_data_from_payload(payload: Optional[dict]) -> Optional[TokenData]:
    if not payload:
        return None
    try:
        user_id = int(payload["sub"])
        role = UserRole(payload.get("role"))
    except (KeyError, TypeError, ValueError):
        return None
    location_id = payload.get("location_id")
    return TokenData(
        user_id=user_id,
        role=role,
        location_id=int(location_id) if location_id is not None else None,
    )


async def get_current_user(request: Request) -> TokenData:
    """Get the current authenticated staff member from the JWT token."""
    token = token_from_request(request)
    payload = decode_access_token(token) if token else None

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    current = token_data_from_payload(payload)
    if current is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return current


def require_role(minimum_role: UserRole):
    """Dependency to require a minimum role level."""

    async def role_checker(
        current_user: Annotated[TokenData, Depends(get_current_user)]
    ) -> TokenData:
        user_level = ROLE_HIERARCHY.get(current_user.role, 0)
        required_level = ROLE_HIERARCHY.get(minimum_role, 0)

        if user_level < required_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum_role.value} or higher",
            )
        return current_user

    return role_checker


RequireManager = Annotated[TokenData, Depends(require_role(UserRole.MANAGER))]
RequireStaff = Annotated[TokenData, Depends(require_role(UserRole.STAFF))]
