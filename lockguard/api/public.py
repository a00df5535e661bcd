from fastapi import APIRouter, HTTPException, Request

from lockguard.api.deps import LockoutService
from lockguard.middleware.security import get_client_ip
from lockguard.schemas.security import VerificationUnlockRequest, UnlockResponse
from lockguard.services.lockout_policy import UnlockMethod, UnlockRequest


router = APIRouter()


@router.post("/auth/unlock", response_model=UnlockResponse)
async def unlock_with_token(data: VerificationUnlockRequest, req: Request, lockout: LockoutService):
    """Self-service unlock with a token delivered out of band."""
    result = await lockout.unlock_account(UnlockRequest(
        method=UnlockMethod.VERIFICATION,
        user_id=data.user_id,
        verification_token=data.token,
        reason=f"Verification unlock from {get_client_ip(req)}",
    ))
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    return UnlockResponse(success=True, unlocked=result.unlocked)
