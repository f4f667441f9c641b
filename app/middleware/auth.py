from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import AuthError, ForbiddenError
from app.models import User

bearer_scheme = HTTPBearer(auto_error=False)


class AdminPrincipal:
    """Claims of an authenticated admin token."""
    def __init__(self, id: int, email: Optional[str], role: Optional[str]):
        self.id = id
        self.email = email
        self.role = role


def create_access_token(sub, expires_minutes: Optional[int] = None, **claims) -> str:
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or settings.JWT_EXPIRE_MINUTES)
    payload = {"sub": str(sub), "exp": expire, **claims}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _decode(bearer: Optional[HTTPAuthorizationCredentials]) -> dict:
    if not bearer or not bearer.credentials:
        raise AuthError("Authentication required")
    settings = get_settings()
    try:
        payload = jwt.decode(
            bearer.credentials,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        payload["sub"] = int(payload["sub"])
    except (JWTError, ValueError, KeyError, TypeError):
        raise AuthError("Invalid or expired token")
    return payload


def get_current_user(
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    payload = _decode(bearer)
    user = db.get(User, payload["sub"])
    if not user:
        raise AuthError("User not found")
    return user


def get_current_admin(
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> AdminPrincipal:
    payload = _decode(bearer)
    return AdminPrincipal(id=payload["sub"], email=payload.get("email"), role=payload.get("role"))


def require_super_admin(admin: AdminPrincipal = Depends(get_current_admin)) -> AdminPrincipal:
    if admin.role != get_settings().ADMIN_ROLE:
        raise ForbiddenError("Super admin role required")
    return admin
