"""User account creation shared by registration, radiologist onboarding and the admin script"""

import logging
from typing import Optional

from sqlmodel import Session, or_, select

from auth import generate_totp_secret, get_password_hash
from errors import BadRequest, Conflict
from models import User, UserType
from privileges import seed_default_privileges

logger = logging.getLogger(__name__)


def ensure_unique_identity(session: Session, username: str, email: str, exclude_id: Optional[str] = None) -> None:
    statement = select(User).where(or_(User.username == username, User.email == email))
    if exclude_id:
        statement = statement.where(User.id != exclude_id)
    if session.exec(statement).first():
        raise Conflict("User with this email or username already exists")


def ensure_unique_license(session: Session, license_id: Optional[str], exclude_id: Optional[str] = None) -> None:
    """License ids are unique across active radiologists"""
    if not license_id:
        return
    statement = select(User).where(
        User.user_type == UserType.RADIOLOGIST,
        User.license_id == license_id,
        User.is_active == True,
    )
    if exclude_id:
        statement = statement.where(User.id != exclude_id)
    if session.exec(statement).first():
        raise Conflict("A radiologist with this license ID already exists", field="licenseId")


def create_account(
    session: Session,
    *,
    username: str,
    name: str,
    email: str,
    password: str,
    user_type: UserType,
    license_id: Optional[str] = None,
    two_factor_enabled: bool = False,
) -> User:
    """
    Insert a user with a fresh TOTP secret and the default grants of its role.

    Super admins get no grants: ``isSuperAdmin`` already allows everything.
    """
    email = email.lower()
    ensure_unique_identity(session, username, email)
    if user_type == UserType.RADIOLOGIST:
        if not license_id:
            raise BadRequest("License ID is required for radiologists", field="licenseId")
        ensure_unique_license(session, license_id)

    user = User(
        username=username,
        name=name,
        email=email,
        password_hash=get_password_hash(password),
        user_type=user_type,
        is_super_admin=user_type == UserType.SUPER_ADMIN,
        license_id=license_id,
        two_factor_secret=generate_totp_secret(),
        two_factor_enabled=two_factor_enabled,
    )
    seed_default_privileges(user)
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Created {user_type.value} account {user.id} ({username})")
    return user
