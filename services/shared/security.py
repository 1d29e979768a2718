import os
import logging

from fastapi import Header, HTTPException, Depends
from jose import jwt, JWTError, ExpiredSignatureError

logger = logging.getLogger(__name__)

ALGO = "HS256"


def _jwt_settings() -> tuple[str, str | None, str | None]:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        logger.error("JWT_SECRET is not set; rejecting authenticated request")
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    return secret, os.getenv("JWT_ISSUER"), os.getenv("JWT_AUDIENCE")


def decode_token(token: str) -> dict:
    secret, issuer, audience = _jwt_settings()
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[ALGO],
            audience=audience,
            issuer=issuer,
            options={"verify_aud": bool(audience)},
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_user(authorization: str = Header(default=None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    return decode_token(token)


def require_admin(claims: dict = Depends(require_user)) -> dict:
    if not claims.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return claims
