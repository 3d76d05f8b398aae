from typing import Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session
from database import get_session
from models import User
from auth import decode_token
from errors import Forbidden, Unauthorized
from privileges import allow

security = HTTPBearer(auto_error=False)

def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session)
) -> User:
    """Resolve the caller from the bearer token; inactive users are rejected"""
    if credentials is None:
        raise Unauthorized("Authentication required")

    token = credentials.credentials
    payload = decode_token(token)

    if not payload or payload.get("type") != "access":
        raise Unauthorized("Invalid authentication credentials")

    user = session.get(User, payload.get("sub"))
    if not user:
        raise Unauthorized("User no longer exists")

    if not user.is_active:
        raise Unauthorized("Account is deactivated")

    request.state.user = user
    request.state.token_payload = payload
    return user

def require_privilege(module: str, operation: str):
    """Dependency factory gating a route on a (module, operation) grant"""
    def privilege_checker(current_user: User = Depends(get_current_user)) -> User:
        if not allow(current_user, module, operation):
            raise Forbidden(f"You do not have permission to {operation} {module}")
        return current_user
    return privilege_checker

def require_super_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_super_admin:
        raise Forbidden("Super admin access required")
    return current_user
