"""
User session and role models
"""
from sqlalchemy import Column, String, DateTime, Boolean, Text, JSON, Integer

from lockguard.database import Base
from lockguard.utils.helpers import utcnow, new_uuid


class UserSession(Base):
    """Tracked login session"""
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(64), index=True)
    device_fingerprint = Column(String(128), nullable=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    location = Column(JSON, nullable=True)  # country, region, city, latitude, longitude
    created_at = Column(DateTime, default=utcnow, index=True)
    last_activity = Column(DateTime, default=utcnow, index=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(String(50), nullable=True)


class UserRole(Base):
    """Role assignment used to pick a lockout policy"""
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), index=True)
    role = Column(String(30))  # user, business_owner, admin
    is_primary = Column(Boolean, default=True)
