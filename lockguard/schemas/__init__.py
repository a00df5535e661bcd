from lockguard.schemas.auth import AdminLoginRequest, TokenResponse, AdminUserResponse
from lockguard.schemas.security import (
    LockoutStatusResponse, AdminUnlockRequest, VerificationUnlockRequest, UnlockResponse,
    UnlockTokenRequest, UnlockTokenResponse, SecurityIncidentResponse, ResolveIncidentRequest,
    SecurityAlertResponse, BlockedIPResponse, UnblockIPRequest, SessionAnalyticsResponse,
    UserSessionResponse, RevokeSessionRequest, RevokeSessionResponse,
    MonitoringJobResponse, MonitoringStatusResponse,
)

__all__ = [
    # Auth
    "AdminLoginRequest", "TokenResponse", "AdminUserResponse",
    # Lockout
    "LockoutStatusResponse", "AdminUnlockRequest", "VerificationUnlockRequest", "UnlockResponse",
    "UnlockTokenRequest", "UnlockTokenResponse",
    # Incidents and alerts
    "SecurityIncidentResponse", "ResolveIncidentRequest", "SecurityAlertResponse",
    "BlockedIPResponse", "UnblockIPRequest",
    # Sessions and monitoring
    "UserSessionResponse", "RevokeSessionRequest", "RevokeSessionResponse",
    "SessionAnalyticsResponse", "MonitoringJobResponse", "MonitoringStatusResponse",
]
