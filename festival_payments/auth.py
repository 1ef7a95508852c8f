from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from festival_payments import config


def verify_token(authorization: Optional[str] = Header(None)) -> dict:
    """Bearer HS256 token guarding the management API."""
    try:
        if not authorization:
            raise ValueError("missing authorization header")
        scheme, token = authorization.split()
        if scheme.lower() != "bearer" or not config.JWT_SECRET:
            raise ValueError("unsupported authorization scheme")
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
