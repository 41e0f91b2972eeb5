from typing import Any, Dict, Optional
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from app.core.config import settings

def create_access_token(subject: Any, role: Optional[str] = None, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed access token for a handler"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = {
        "sub": str(subject),
        "type": "access",
        "exp": expire,
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate access token"""
    try:
        # jose rejects expired tokens itself
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    # Check token type
    if payload.get("type") != "access":
        return None
    return payload
