from fastapi import APIRouter

from lockguard.api import auth, public, security

api_router = APIRouter()

# Admin API routes
api_router.include_router(auth.router, prefix="/admin/auth", tags=["Admin Auth"])
api_router.include_router(security.router, prefix="/admin", tags=["Admin Security"])

# Public routes
api_router.include_router(public.router, tags=["Public"])
