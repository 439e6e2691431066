from fastapi import Header, HTTPException
from jose import JWTError, jwt

from storefront.config import jwt_secret

ADMIN_ROLE = "admin"


def decode_admin_token(token: str) -> dict:
    """Decode an HS256 JWT and require the admin role; raises ValueError otherwise."""
    secret = jwt_secret()
    if not secret:
        raise ValueError("JWT_SECRET is not configured")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError as exc:
        raise ValueError(str(exc)) from exc
    if claims.get("role") != ADMIN_ROLE:
        raise ValueError("Admin role required")
    return claims


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported scheme")
        return decode_admin_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
