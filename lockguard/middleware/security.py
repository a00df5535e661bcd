"""
Security middleware: rejects blocked IPs on authentication endpoints
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import select

from lockguard.database import async_session_maker
from lockguard.models.security import BlockedIP
from lockguard.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class SecurityMiddleware(BaseHTTPMiddleware):
    """Middleware to check if IP is blocked"""

    # Endpoints to protect
    PROTECTED_ENDPOINTS = [
        "/api/admin/auth/login",
        "/api/auth/unlock",
    ]

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(ep) for ep in self.PROTECTED_ENDPOINTS):
            client_ip = get_client_ip(request)
            session_factory = getattr(request.app.state, "session_factory", async_session_maker)

            block = await self._check_blocked(session_factory, client_ip)
            if block is not None:
                if block.is_permanent or not block.blocked_until:
                    detail = f"IP blocked: {block.reason}"
                else:
                    remaining = block.blocked_until - utcnow()
                    minutes = max(int(remaining.total_seconds() / 60), 1)
                    detail = f"IP temporarily blocked for {minutes} more minutes. Reason: {block.reason}"

                logger.info(f"Rejected request from blocked IP {client_ip} to {request.url.path}")
                return JSONResponse(status_code=403, content={"detail": detail})

        return await call_next(request)

    async def _check_blocked(self, session_factory, ip_address: str) -> BlockedIP | None:
        """Active block for an IP; expired temporary blocks are lifted on the way."""
        async with session_factory() as db:
            result = await db.execute(
                select(BlockedIP).where(
                    BlockedIP.ip_address == ip_address,
                    BlockedIP.is_active == True
                ).order_by(BlockedIP.id.desc())
            )
            block = result.scalars().first()

            if not block:
                return None

            if not block.is_permanent and block.blocked_until and utcnow() > block.blocked_until:
                block.is_active = False
                block.unblocked_at = utcnow()
                block.notes = "Auto-unblocked: temporary block expired"
                await db.commit()
                return None

            return block


def get_client_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For and X-Real-IP from a reverse proxy"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"
