"""FastAPI dependencies for authentication.

Provides dependency injection for:
- Current principal extraction from JWT
- Role-based access control
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from pydantic import ValidationError

from src.auth.permissions import UserRole, has_permission
from src.auth.schemas import Principal
from src.auth.security import decode_access_token
from src.core.context import set_user


def get_token_from_header(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: FastAPI request

    Returns:
        Token string or None if not present
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    expected_parts = 2
    parts = auth_header.split()
    if len(parts) != expected_parts or parts[0].lower() != "bearer":
        return None

    return parts[1]


def _principal_from_token(token: str) -> Principal:
    payload = decode_access_token(token)
    try:
        principal = Principal(
            id=payload["sub"],
            email=payload.get("email"),
            role=payload["role"],
        )
    except ValidationError as e:
        raise JWTError("Invalid principal claims") from e

    # Bind user to the logging context
    set_user(str(principal.id), principal.role.value)
    return principal


async def get_current_user(
    token: Annotated[str | None, Depends(get_token_from_header)],
) -> Principal:
    """Get current authenticated principal from JWT token.

    Raises:
        HTTPException(401): If token is missing, invalid, or expired
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token not provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return _principal_from_token(token)
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_user_optional(
    token: Annotated[str | None, Depends(get_token_from_header)],
) -> Principal | None:
    """Get current principal if authenticated, None otherwise.

    Use this for endpoints that work for both authenticated and anonymous users.
    """
    if not token:
        return None

    try:
        return _principal_from_token(token)
    except JWTError:
        return None


def require_permission(required_role: UserRole):
    """Create dependency requiring at least a permission level.

    Uses hierarchical comparison: ADMIN >= INSTRUCTOR >= STUDENT

    Example:
        @router.post("/courses")
        async def create_course(
            user: Annotated[Principal, Depends(require_permission(UserRole.INSTRUCTOR))]
        ):
            # Accessible by INSTRUCTOR and ADMIN
            ...
    """

    async def permission_checker(
        user: Annotated[Principal, Depends(get_current_user)],
    ) -> Principal:
        if not has_permission(user.role, required_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )

        return user

    return permission_checker


# ==============================================================================
# Type Aliases for Cleaner Code
# ==============================================================================

CurrentUser = Annotated[Principal, Depends(get_current_user)]

OptionalUser = Annotated[Principal | None, Depends(get_current_user_optional)]

InstructorUser = Annotated[Principal, Depends(require_permission(UserRole.INSTRUCTOR))]
