from typing import List, Optional
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from models import Actor, UserRole, STAFF_ROLES
from auth import decode_token

security = HTTPBearer()

def actor_from_token(token: str) -> Optional[Actor]:
    """Actor carried by a valid access token, or None"""
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    try:
        return Actor(
            user_id=int(payload.get("sub")),
            role=UserRole(payload.get("role")),
            name=payload.get("name"),
        )
    except (TypeError, ValueError):
        return None

def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """Get the acting user from the bearer token. The identity provider is trusted."""
    actor = actor_from_token(credentials.credentials)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    # Store actor in request state for the request logging middleware
    request.state.user = actor

    return actor

def require_roles(allowed_roles: List[UserRole]):
    """Dependency factory for role-based access control"""
    def role_checker(current_user: Actor = Depends(get_current_user)) -> Actor:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join([r.value for r in allowed_roles])}"
            )
        return current_user
    return role_checker

# Convenience dependencies for common role checks
require_staff = require_roles(list(STAFF_ROLES))

def require_admin(current_user: Actor = Depends(get_current_user)) -> Actor:
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
