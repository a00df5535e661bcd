"""
Security schemas
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class LockoutStatusResponse(BaseModel):
    is_locked: bool
    lockout_type: Optional[str] = None
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None
    attempt_count: int
    max_attempts: int
    next_attempt_delay: Optional[int] = None
    can_unlock: bool
    requires_admin_intervention: bool
    security_incidents: int

    model_config = {"from_attributes": True}


class AdminUnlockRequest(BaseModel):
    user_id: Optional[str] = Field(None, max_length=64)
    ip_address: Optional[str] = Field(None, max_length=45)
    reason: Optional[str] = Field(None, max_length=500)


class VerificationUnlockRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    token: str = Field(..., min_length=1)


class UnlockResponse(BaseModel):
    success: bool
    unlocked: int = 0
    error: Optional[str] = None


class UnlockTokenRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class UnlockTokenResponse(BaseModel):
    token: str
    expires_in: int


class SecurityIncidentResponse(BaseModel):
    id: int
    incident_type: str
    severity: str
    status: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    description: Optional[str] = None
    evidence: Optional[dict] = None
    automated_response: Optional[str] = None
    admin_notified: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ResolveIncidentRequest(BaseModel):
    status: str = Field("resolved", pattern="^(investigating|resolved)$")
    notes: Optional[str] = Field(None, max_length=1000)


class SecurityAlertResponse(BaseModel):
    severity: str
    type: str
    description: str
    affected_users: list[str]
    details: dict
    timestamp: datetime

    model_config = {"from_attributes": True}


class BlockedIPResponse(BaseModel):
    id: int
    ip_address: str
    reason: str
    failed_attempts: int
    blocked_at: datetime
    blocked_until: Optional[datetime] = None
    is_permanent: bool
    is_active: bool
    unblocked_at: Optional[datetime] = None
    unblocked_by: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class UnblockIPRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)


class UserSessionResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[dict] = None
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class RevokeSessionRequest(BaseModel):
    reason: str = Field("manual_revoke", max_length=50)


class RevokeSessionResponse(BaseModel):
    session_id: str
    revoked: bool


class SessionAnalyticsResponse(BaseModel):
    total_active_sessions: int
    unique_users: int
    average_session_duration: float
    top_countries: list[dict]
    top_devices: list[dict]
    suspicious_activity: list[SecurityAlertResponse]

    model_config = {"from_attributes": True}


class MonitoringJobResponse(BaseModel):
    id: str
    name: str
    next_run: Optional[str] = None


class MonitoringStatusResponse(BaseModel):
    running: bool
    started_at: Optional[str] = None
    jobs: list[MonitoringJobResponse]
