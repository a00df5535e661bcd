from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from lockguard.database import get_db
from lockguard.models import AdminUser
from lockguard.services.lockout_service import AccountLockoutService
from lockguard.services.session_monitoring import SessionMonitoringService
from lockguard.utils.security import decode_token


security = HTTPBearer()


async def get_current_admin(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> AdminUser:
    """Dependency for getting current admin user from JWT."""
    token = credentials.credentials
    payload = decode_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("type") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    user_id = payload.get("sub")
    if user_id is None or not str(user_id).isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    result = await db.execute(select(AdminUser).where(AdminUser.id == int(user_id)))
    user = result.scalar_one_or_none()

    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    return user


async def get_lockout_service(
    db: Annotated[AsyncSession, Depends(get_db)]
) -> AccountLockoutService:
    return AccountLockoutService(db)


def get_monitoring_service(request: Request) -> SessionMonitoringService:
    """Monitoring service built by the application lifespan."""
    monitoring = getattr(request.app.state, "monitoring", None)
    if monitoring is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session monitoring is disabled",
        )
    return monitoring


# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
CurrentAdmin = Annotated[AdminUser, Depends(get_current_admin)]
LockoutService = Annotated[AccountLockoutService, Depends(get_lockout_service)]
Monitoring = Annotated[SessionMonitoringService, Depends(get_monitoring_service)]
