"""
Amora — core/security.py
─────────────────────────────────────────────────────────────────
All JWT and auth helpers in one place.

Usage:
    from amora.core.security import make_jwt, verify_token, get_current_principal

    # In a route:
    principal: Principal = Depends(get_current_principal)

    # Create a session token:
    token = make_jwt({"sub": user_id, "role": "user"}, days=30)
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from amora.core.config import cfg
from amora.core.errors import AuthenticationError, ForbiddenError
from amora.models.user import Role

logger = logging.getLogger("amora.security")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to a request or socket."""
    user_id: str
    role:    Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# ─────────────────────────────────────────────
# JWT
# ─────────────────────────────────────────────
def make_jwt(payload: dict, days: int = None, minutes: int = None) -> str:
    """
    Create a signed JWT.

    Examples:
        make_jwt({"sub": user_id, "role": "user"}, days=30)
        make_jwt({"sub": user_id}, minutes=5)
    """
    if days:
        expires = datetime.now(timezone.utc) + timedelta(days=days)
    elif minutes:
        expires = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    else:
        expires = datetime.now(timezone.utc) + timedelta(days=cfg.SESSION_DAYS)

    data = {**payload, "exp": expires}
    return jwt.encode(data, cfg.JWT_SECRET, algorithm=cfg.ALGORITHM)


def decode_jwt(token: str) -> dict:
    """
    Decode and verify a JWT.
    Raises JWTError if invalid or expired.
    """
    return jwt.decode(token, cfg.JWT_SECRET, algorithms=[cfg.ALGORITHM])


def verify_token(token: Optional[str]) -> Principal:
    """
    Credential verifier: token → Principal.
    Raises AuthenticationError for missing, invalid or expired tokens.
    """
    if not token:
        raise AuthenticationError("Not authenticated. Please log in.")
    if token.startswith("Bearer "):
        token = token[len("Bearer "):]

    try:
        payload = decode_jwt(token)
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise AuthenticationError("Session expired. Please log in again.")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token payload.")
    try:
        role = Role(payload.get("role", Role.USER.value))
    except ValueError:
        raise AuthenticationError("Invalid token role.")
    return Principal(user_id=user_id, role=role)


def issue_session_token(user_id: str, role: Role) -> str:
    return make_jwt({"sub": user_id, "role": role.value}, days=cfg.SESSION_DAYS)


# ─────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────
def get_token_from_request(request: Request) -> Optional[str]:
    """
    Extract JWT from the Authorization: Bearer <token> header.
    Returns None if not found.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):] or None
    return None


async def get_current_principal(request: Request) -> Principal:
    """
    FastAPI dependency, returns the Principal from the bearer token.

    Raises 401 if no token, token invalid/expired, or no 'sub'.
    """
    return verify_token(get_token_from_request(request))


async def require_admin(request: Request) -> Principal:
    """Same as get_current_principal, but 403 for non-admin roles."""
    principal = await get_current_principal(request)
    if not principal.is_admin:
        raise ForbiddenError("Admin role required.")
    return principal
