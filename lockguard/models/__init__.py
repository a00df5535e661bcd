from lockguard.models.admin import AdminUser
from lockguard.models.security import (
    AccountSecurityEvent,
    SecurityIncident,
    SecurityEvent,
    SystemEvent,
    BlockedIP,
    UnlockToken,
)
from lockguard.models.session import UserSession, UserRole

__all__ = [
    "AdminUser",
    "AccountSecurityEvent",
    "SecurityIncident",
    "SecurityEvent",
    "SystemEvent",
    "BlockedIP",
    "UnlockToken",
    "UserSession",
    "UserRole",
]
