"""
Session store helpers: listing and revoking user sessions
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lockguard.models.security import SystemEvent
from lockguard.models.session import UserSession
from lockguard.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class SessionService:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def get_active_sessions(self, user_id: str) -> list[UserSession]:
        """Active sessions for a user, most recently used first."""
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id)
            .where(UserSession.is_active == True)
            .order_by(UserSession.last_activity.desc())
        )
        return list(result.scalars().all())

    async def revoke_session(self, session_id: str, reason: str = "manual_revoke") -> bool:
        """Revoke one session. Revoking an inactive session is a no-op."""
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id)
            .where(UserSession.is_active == True)
            .values(is_active=False, revoked_at=self.clock(), revoke_reason=reason)
            .execution_options(synchronize_session=False)
        )
        revoked = (result.rowcount or 0) > 0

        if revoked:
            self.db.add(SystemEvent(
                event_type="session_revoked",
                event_category="session_management",
                details={"session_id": session_id, "reason": reason},
                created_at=self.clock(),
            ))

        await self.db.commit()
        return revoked

    async def revoke_all_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = "revoke_all",
    ) -> int:
        """Revoke every active session of a user, optionally keeping one."""
        query = (
            update(UserSession)
            .where(UserSession.user_id == user_id)
            .where(UserSession.is_active == True)
        )
        if except_session_id:
            query = query.where(UserSession.id != except_session_id)

        result = await self.db.execute(
            query
            .values(is_active=False, revoked_at=self.clock(), revoke_reason=reason)
            .execution_options(synchronize_session=False)
        )
        revoked = result.rowcount or 0

        self.db.add(SystemEvent(
            event_type="sessions_mass_revoked",
            event_category="session_management",
            details={
                "user_id": user_id,
                "revoked_count": revoked,
                "except_session_id": except_session_id,
                "reason": reason,
            },
            created_at=self.clock(),
        ))
        await self.db.commit()

        logger.warning(f"Revoked {revoked} sessions for user {user_id} ({reason})")
        return revoked
