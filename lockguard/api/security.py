"""
Security API endpoints - lockout, incident and session monitoring management
"""
from typing import Optional
from fastapi import APIRouter, HTTPException, Query
from sqlalchemy import select

from lockguard.api.deps import DBSession, CurrentAdmin, LockoutService, Monitoring
from lockguard.config import settings
from lockguard.models.security import BlockedIP
from lockguard.models.session import UserSession
from lockguard.schemas.security import (
    AdminUnlockRequest,
    BlockedIPResponse,
    LockoutStatusResponse,
    MonitoringStatusResponse,
    ResolveIncidentRequest,
    RevokeSessionRequest,
    RevokeSessionResponse,
    SecurityAlertResponse,
    SecurityIncidentResponse,
    SessionAnalyticsResponse,
    UnblockIPRequest,
    UnlockResponse,
    UnlockTokenRequest,
    UnlockTokenResponse,
    UserSessionResponse,
)
from lockguard.services.alerting import AlertDispatcher
from lockguard.services.lockout_policy import UnlockMethod, UnlockRequest
from lockguard.services.session_service import SessionService
from lockguard.utils.helpers import utcnow

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/lockout-status", response_model=LockoutStatusResponse)
async def get_lockout_status(
    lockout: LockoutService,
    current_admin: CurrentAdmin,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    role: Optional[str] = None,
):
    """Current lockout state for a user and/or IP (read-only)"""
    if not user_id and not ip_address:
        raise HTTPException(status_code=400, detail="user_id or ip_address required")

    role = role or await lockout.get_user_role(user_id)
    status = await lockout.check_status(user_id, ip_address, role=role, apply=False)
    return LockoutStatusResponse.model_validate(status)


@router.post("/unlock", response_model=UnlockResponse)
async def admin_unlock(
    data: AdminUnlockRequest,
    lockout: LockoutService,
    current_admin: CurrentAdmin,
):
    """Clear active lockouts for a user and/or IP"""
    result = await lockout.unlock_account(UnlockRequest(
        method=UnlockMethod.ADMIN,
        user_id=data.user_id,
        ip_address=data.ip_address,
        admin_user_id=current_admin.username,
        reason=data.reason,
    ))
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    return UnlockResponse(success=True, unlocked=result.unlocked)


@router.post("/unlock-token", response_model=UnlockTokenResponse)
async def issue_unlock_token(
    data: UnlockTokenRequest,
    lockout: LockoutService,
    current_admin: CurrentAdmin,
):
    """Issue a single-use verification unlock token for delivery to the user"""
    token = await lockout.issue_unlock_token(data.user_id)
    return UnlockTokenResponse(token=token, expires_in=settings.unlock_token_expire_minutes * 60)


@router.get("/incidents", response_model=list[SecurityIncidentResponse])
async def get_incidents(
    lockout: LockoutService,
    current_admin: CurrentAdmin,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
):
    """List security incidents, newest first"""
    incidents = await lockout.get_incidents(status=status, limit=per_page, offset=(page - 1) * per_page)
    return [SecurityIncidentResponse.model_validate(i) for i in incidents]


@router.post("/incidents/{incident_id}/resolve", response_model=SecurityIncidentResponse)
async def resolve_incident(
    incident_id: int,
    data: ResolveIncidentRequest,
    lockout: LockoutService,
    current_admin: CurrentAdmin,
):
    """Record a reviewer's resolution of an incident"""
    incident = await lockout.resolve_incident(
        incident_id,
        resolved_by=current_admin.username,
        notes=data.notes,
        status=data.status,
    )
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")

    return SecurityIncidentResponse.model_validate(incident)


@router.get("/alerts", response_model=list[SecurityAlertResponse])
async def get_recent_alerts(
    db: DBSession,
    current_admin: CurrentAdmin,
    hours: int = Query(24, ge=1, le=720),
    limit: int = Query(50, ge=1, le=500),
):
    """Security alerts raised by the detectors"""
    alerts = await AlertDispatcher(db).get_recent_alerts(hours=hours, limit=limit)
    return [SecurityAlertResponse.model_validate(a) for a in alerts]


@router.get("/blocked", response_model=list[BlockedIPResponse])
async def get_blocked_ips(
    db: DBSession,
    current_admin: CurrentAdmin,
    active_only: bool = Query(True),
    limit: int = Query(100, ge=1, le=500),
):
    """Get list of blocked IPs"""
    query = select(BlockedIP).order_by(BlockedIP.blocked_at.desc()).limit(limit)
    if active_only:
        query = query.where(BlockedIP.is_active == True)

    result = await db.execute(query)
    return [BlockedIPResponse.model_validate(b) for b in result.scalars().all()]


@router.post("/blocked/{ip_address}/unblock", response_model=BlockedIPResponse)
async def unblock_ip(
    ip_address: str,
    data: UnblockIPRequest,
    db: DBSession,
    current_admin: CurrentAdmin,
):
    """Unblock an IP address"""
    result = await db.execute(
        select(BlockedIP).where(
            BlockedIP.ip_address == ip_address,
            BlockedIP.is_active == True
        )
    )
    blocks = result.scalars().all()

    if not blocks:
        raise HTTPException(status_code=404, detail="IP not found or not blocked")

    for block in blocks:
        block.is_active = False
        block.unblocked_at = utcnow()
        block.unblocked_by = current_admin.username
        block.notes = data.notes

    await db.commit()
    return BlockedIPResponse.model_validate(blocks[-1])


@router.get("/sessions", response_model=list[UserSessionResponse])
async def get_user_sessions(user_id: str, db: DBSession, current_admin: CurrentAdmin):
    """Active sessions of a user, most recently used first"""
    sessions = await SessionService(db).get_active_sessions(user_id)
    return [UserSessionResponse.model_validate(s) for s in sessions]


@router.post("/sessions/{session_id}/revoke", response_model=RevokeSessionResponse)
async def revoke_user_session(
    session_id: str,
    data: RevokeSessionRequest,
    db: DBSession,
    current_admin: CurrentAdmin,
):
    """Revoke one session; an already revoked session is reported as not revoked"""
    result = await db.execute(select(UserSession.id).where(UserSession.id == session_id))
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Session not found")

    revoked = await SessionService(db).revoke_session(session_id, reason=data.reason)
    return RevokeSessionResponse(session_id=session_id, revoked=revoked)


@router.get("/sessions/analytics", response_model=SessionAnalyticsResponse)
async def get_session_analytics(monitoring: Monitoring, current_admin: CurrentAdmin):
    """Aggregate view of active sessions and recent alerts"""
    analytics = await monitoring.get_session_analytics()
    return SessionAnalyticsResponse.model_validate(analytics)


@router.get("/monitoring", response_model=MonitoringStatusResponse)
async def get_monitoring_status(monitoring: Monitoring, current_admin: CurrentAdmin):
    """Scheduler state and registered jobs"""
    return MonitoringStatusResponse(**monitoring.get_status())


@router.post("/monitoring/run/{job_id}")
async def run_monitoring_job(job_id: str, monitoring: Monitoring, current_admin: CurrentAdmin):
    """Run a monitoring job immediately"""
    result = await monitoring.run_job_now(job_id)
    if not result["success"] and result["error"].endswith("not found"):
        raise HTTPException(status_code=404, detail=result["error"])
    return result
