import logging

from fastapi import APIRouter, HTTPException, status, Request
from sqlalchemy import select

from lockguard.api.deps import DBSession, CurrentAdmin, LockoutService
from lockguard.config import settings
from lockguard.middleware.security import get_client_ip
from lockguard.models import AdminUser
from lockguard.schemas.auth import AdminLoginRequest, TokenResponse, AdminUserResponse
from lockguard.services.lockout_policy import LockoutEvent, LockoutStatus
from lockguard.utils.security import verify_password, create_access_token, verify_totp

logger = logging.getLogger(__name__)

router = APIRouter()

ADMIN_ROLE = "admin"


def _locked_response(lockout: LockoutStatus) -> HTTPException:
    headers = {}
    if lockout.locked_until:
        headers["X-Locked-Until"] = lockout.locked_until.isoformat()
    return HTTPException(
        status_code=status.HTTP_423_LOCKED,
        detail={
            "message": "Account temporarily locked",
            "reason": lockout.reason,
            "locked_until": lockout.locked_until.isoformat() if lockout.locked_until else None,
            "requires_admin_intervention": lockout.requires_admin_intervention,
        },
        headers=headers,
    )


@router.post("/login", response_model=TokenResponse)
async def admin_login(request: AdminLoginRequest, req: Request, db: DBSession, lockout: LockoutService):
    """Admin login endpoint."""
    client_ip = get_client_ip(req)
    user_agent = req.headers.get("User-Agent")

    current = await lockout.check_status(request.username, client_ip, role=ADMIN_ROLE)
    if current.is_locked:
        raise _locked_response(current)

    async def fail(reason: str, detail: str, code: int = status.HTTP_401_UNAUTHORIZED):
        outcome = await lockout.record_failed_attempt(
            LockoutEvent(
                user_id=request.username,
                ip_address=client_ip,
                user_agent=user_agent,
                reason=reason,
                metadata={"endpoint": "/api/admin/auth/login"},
            ),
            role=ADMIN_ROLE,
        )
        if outcome.locked:
            raise _locked_response(outcome.status)
        raise HTTPException(
            status_code=code,
            detail=detail,
            headers={"Retry-After": str(max(outcome.delay_ms // 1000, 1))},
        )

    result = await db.execute(
        select(AdminUser).where(AdminUser.username == request.username)
    )
    user = result.scalar_one_or_none()

    if user is None or not verify_password(request.password, user.password_hash):
        await fail("invalid_credentials", "Incorrect username or password")

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    # Check TOTP if enabled
    if user.totp_secret:
        if not request.totp_code:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="TOTP code required",
            )
        if not verify_totp(user.totp_secret, request.totp_code):
            await fail("invalid_totp", "Invalid TOTP code")

    logger.info(f"Admin {user.username} logged in from {client_ip}")

    access_token = create_access_token(data={"sub": str(user.id)})

    return TokenResponse(
        access_token=access_token,
        token_type="admin",
        expires_in=settings.jwt_access_token_expire_minutes * 60
    )


@router.get("/me", response_model=AdminUserResponse)
async def get_current_admin_info(admin: CurrentAdmin):
    """Get current admin user info."""
    return AdminUserResponse(
        id=admin.id,
        username=admin.username,
        has_totp=admin.totp_secret is not None,
        is_active=admin.is_active
    )
