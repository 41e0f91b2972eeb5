from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.core.database import get_async_session
from app.core.exceptions import PermissionDeniedError
from app.auth.jwt_handler import decode_access_token
from app.models.auth.user import User
from app.models.shared.enums import HandlerRole
import logging

security = HTTPBearer()
logger = logging.getLogger(__name__)

def _unauthorized(detail: str = "Invalid authentication credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )

async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: AsyncSession = Depends(get_async_session)
) -> User:
    """Get current authenticated handler"""
    # Decode token
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized()

    # Get user ID from token
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise _unauthorized()

    # Get user from database
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")

    # Add request info to context
    request.state.current_user = user
    return user

def require_roles(*roles: HandlerRole):
    """
    Dependency to restrict an endpoint to handlers holding one of the given roles

    Examples:
        require_roles(HandlerRole.ADMIN)
    """
    async def role_dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            logger.warning(f"User {current_user.id} with role {current_user.role.value} denied; requires {[r.value for r in roles]}")
            raise PermissionDeniedError(
                f"Requires one of roles: {', '.join(r.value for r in roles)}",
                context={"role": current_user.role.value},
            )
        return current_user

    return role_dependency
