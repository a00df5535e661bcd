from datetime import datetime, timedelta, timezone
from typing import Optional
import secrets

from jose import JWTError, jwt
from passlib.context import CryptContext
import pyotp

from lockguard.config import settings


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

UNLOCK_TOKEN_PURPOSE = "account_unlock"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generate password hash."""
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create admin JWT access token."""
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "type": "admin",
        "iat": datetime.now(timezone.utc)
    })

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except JWTError:
        return None


def create_unlock_token(user_id: str, expires_at: datetime) -> tuple[str, str]:
    """
    Create a signed, time-boxed account unlock token.

    ``expires_at`` is naive UTC. Returns ``(token, jti)``; the jti is stored
    so the token can only be redeemed once.
    """
    jti = secrets.token_hex(16)
    payload = {
        "sub": user_id,
        "purpose": UNLOCK_TOKEN_PURPOSE,
        "jti": jti,
        "exp": expires_at.replace(tzinfo=timezone.utc),
        "iat": datetime.now(timezone.utc),
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_unlock_token(token: str) -> Optional[dict]:
    """Decode an unlock token; None if the signature, expiry or purpose is wrong."""
    payload = decode_token(token)
    if payload is None or payload.get("purpose") != UNLOCK_TOKEN_PURPOSE:
        return None
    if not payload.get("sub") or not payload.get("jti"):
        return None
    return payload


def verify_totp(secret: str, code: str) -> bool:
    """Verify TOTP code."""
    totp = pyotp.TOTP(secret)
    return totp.verify(code)
