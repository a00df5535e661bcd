from pydantic import BaseModel
from typing import Optional


class AdminLoginRequest(BaseModel):
    username: str
    password: str
    totp_code: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int


class AdminUserResponse(BaseModel):
    id: int
    username: str
    has_totp: bool
    is_active: bool

    model_config = {"from_attributes": True}
