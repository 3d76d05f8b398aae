from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlmodel import Session, select

from auth import (
    PASSWORD_RESET_EXPIRE,
    TWO_FACTOR_PURPOSE,
    create_token_pair,
    create_two_factor_token,
    decode_refresh_token,
    decode_token,
    generate_reset_token,
    generate_totp_secret,
    get_password_hash,
    hash_reset_token,
    qr_code_data_uri,
    totp_provisioning_uri,
    verify_password,
    verify_totp,
)
from database import get_session
from dependencies import get_current_user, security
from errors import BadRequest, NotFound, Unauthorized
from models import AuditAction, User, UserType, snapshot
from rate_limit import limiter
from schemas import (
    ChangePasswordRequest,
    Disable2FARequest,
    Enable2FARequest,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
    Verify2FARequest,
    VerifyLogin2FARequest,
    VerifyRegistration2FARequest,
)
from services.accounts import create_account
from services.audit import log_audit
from services.email_service import send_password_reset_email
from services.token_blacklist import blacklist_token
from utils.responses import success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

FORGOT_PASSWORD_MESSAGE = "If your email is registered, you will receive a password reset link"


def _session_tokens(user: User) -> dict:
    access_token, refresh_token = create_token_pair(user.id)
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "user": UserResponse.from_user(user),
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register(request: Request, payload: RegisterRequest, session: Session = Depends(get_session)):
    """Create an account pending TOTP verification and return its otpauth URL"""
    user = create_account(
        session,
        username=payload.username,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        user_type=UserType(payload.role),
        license_id=payload.license_id,
    )
    log_audit(session, user.id, AuditAction.CREATE, "User", user.id, snapshot(user))

    return success(
        {
            "userId": user.id,
            "secret": user.two_factor_secret,
            "otpAuthUrl": totp_provisioning_uri(user.two_factor_secret, user.email),
        },
        "Registration successful. Please scan the QR code to set up 2FA.",
    )


@router.post("/verify-registration-2fa")
@limiter.limit("10/minute")
def verify_registration_2fa(
    request: Request,
    payload: VerifyRegistration2FARequest,
    session: Session = Depends(get_session)
):
    user = session.get(User, payload.user_id)
    if not user:
        raise NotFound("User not found")
    if user.two_factor_enabled:
        raise BadRequest("Two-factor authentication is already enabled")
    if not verify_totp(user.two_factor_secret, payload.token):
        raise BadRequest("Invalid 2FA token", field="token")

    user.two_factor_enabled = True
    user.last_login = datetime.utcnow()
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"User {user.id} completed 2FA registration")

    return success(_session_tokens(user), "2FA verified successfully")


@router.post("/login")
@limiter.limit("5/minute")
def login(request: Request, credentials: LoginRequest, session: Session = Depends(get_session)):
    """First login step: password check, then a short-lived 2FA handshake token"""
    user = session.exec(select(User).where(User.username == credentials.username)).first()
    if not user or not verify_password(credentials.password, user.password_hash):
        logger.warning(f"Failed login attempt for username {credentials.username}")
        raise Unauthorized("Invalid username or password")

    if not user.is_active:
        raise Unauthorized("Account is deactivated")

    # Accounts that turned 2FA off skip the handshake
    if not user.two_factor_secret:
        user.last_login = datetime.utcnow()
        session.add(user)
        session.commit()
        session.refresh(user)
        return success({"twoFactorRequired": False, **_session_tokens(user)}, "Login successful")

    return success(
        {
            "twoFactorRequired": True,
            "twoFactorToken": create_two_factor_token(user.id),
        },
        "2FA token required",
    )


@router.post("/verify-login-2fa")
@limiter.limit("10/minute")
def verify_login_2fa(request: Request, payload: VerifyLogin2FARequest, session: Session = Depends(get_session)):
    """Second login step: exchange handshake token + TOTP for the token pair"""
    claims = decode_token(payload.two_factor_token)
    if not claims or claims.get("type") != "2fa" or claims.get("purpose") != TWO_FACTOR_PURPOSE:
        raise Unauthorized("Invalid token for this action")

    user = session.get(User, claims.get("sub"))
    if not user:
        raise NotFound("User not found")
    if not user.is_active:
        raise Unauthorized("Account is deactivated")

    if not verify_totp(user.two_factor_secret, payload.token):
        raise BadRequest("Invalid 2FA token", field="token")

    # A first successful code also confirms a pending setup
    user.two_factor_enabled = True
    user.last_login = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"User {user.id} logged in")

    return success(_session_tokens(user), "Login successful")


@router.post("/refresh-token")
@limiter.limit("20/minute")
def refresh_token(request: Request, payload: RefreshTokenRequest, session: Session = Depends(get_session)):
    claims = decode_refresh_token(payload.refresh_token)
    if not claims:
        raise Unauthorized("Invalid refresh token")

    user = session.get(User, claims.get("sub"))
    if not user or not user.is_active:
        raise Unauthorized("Invalid refresh token")

    access_token, new_refresh_token = create_token_pair(user.id)
    return success({"accessToken": access_token, "refreshToken": new_refresh_token})


@router.post("/forgot-password")
@limiter.limit("3/minute")
async def forgot_password(request: Request, payload: ForgotPasswordRequest, session: Session = Depends(get_session)):
    """Same response whether or not the email belongs to an account"""
    user = session.exec(select(User).where(User.email == payload.email.lower())).first()
    if not user or not user.is_active:
        return success(message=FORGOT_PASSWORD_MESSAGE)

    token, digest = generate_reset_token()
    user.reset_password_token = digest
    user.reset_password_expires = datetime.utcnow() + PASSWORD_RESET_EXPIRE
    session.add(user)
    session.commit()

    if not await send_password_reset_email(user.email, user.name, token):
        logger.error(f"Password reset email for user {user.id} was not delivered")

    return success(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password")
@limiter.limit("5/minute")
def reset_password(request: Request, payload: ResetPasswordRequest, session: Session = Depends(get_session)):
    user = session.exec(
        select(User).where(User.reset_password_token == hash_reset_token(payload.token))
    ).first()
    if (
        not user
        or not user.reset_password_expires
        or user.reset_password_expires <= datetime.utcnow()
    ):
        raise BadRequest("Invalid or expired reset token", field="token")

    user.password_hash = get_password_hash(payload.password)
    user.reset_password_token = None
    user.reset_password_expires = None
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"User {user.id} reset their password")

    return success(_session_tokens(user), "Password reset successful")


@router.get("/me")
def get_me(current_user: User = Depends(get_current_user)):
    return success(UserResponse.from_user(current_user))


@router.post("/change-password")
@limiter.limit("5/minute")
def change_password(
    request: Request,
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    if not verify_password(payload.current_password, current_user.password_hash):
        raise BadRequest("Current password is incorrect", field="currentPassword")

    current_user.password_hash = get_password_hash(payload.new_password)
    current_user.updated_at = datetime.utcnow()
    session.add(current_user)
    session.commit()
    logger.info(f"User {current_user.id} changed their password")

    return success(message="Password changed successfully")


@router.post("/2fa/enable")
def enable_two_factor(
    request: Request,
    payload: Enable2FARequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Issue a new secret; 2FA is switched on by ``/2fa/verify``"""
    if not verify_password(payload.password, current_user.password_hash):
        raise BadRequest("Password is incorrect", field="password")
    if current_user.two_factor_enabled:
        raise BadRequest("Two-factor authentication is already enabled")

    secret = generate_totp_secret()
    current_user.two_factor_secret = secret
    current_user.two_factor_enabled = False
    session.add(current_user)
    session.commit()

    otp_auth_url = totp_provisioning_uri(secret, current_user.email)
    return success(
        {
            "secret": secret,
            "otpAuthUrl": otp_auth_url,
            "qrCode": qr_code_data_uri(otp_auth_url),
        },
        "Scan the QR code and verify a code to enable 2FA",
    )


@router.post("/2fa/verify")
def verify_two_factor(
    request: Request,
    payload: Verify2FARequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    if not current_user.two_factor_secret:
        raise BadRequest("Two-factor authentication has not been set up")
    if not verify_totp(current_user.two_factor_secret, payload.token):
        raise BadRequest("Invalid token", field="token")

    current_user.two_factor_enabled = True
    session.add(current_user)
    session.commit()
    return success(message="2FA enabled successfully")


@router.post("/2fa/disable")
def disable_two_factor(
    request: Request,
    payload: Disable2FARequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    if not verify_password(payload.password, current_user.password_hash):
        raise BadRequest("Password is incorrect", field="password")
    if not verify_totp(current_user.two_factor_secret, payload.token):
        raise BadRequest("Invalid token", field="token")

    current_user.two_factor_enabled = False
    current_user.two_factor_secret = None
    session.add(current_user)
    session.commit()
    logger.info(f"User {current_user.id} disabled 2FA")
    return success(message="2FA disabled successfully")


@router.post("/logout")
def logout(
    request: Request,
    current_user: User = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    """
    Logout by blacklisting the presented access token.

    The token stays invalid for the remainder of its lifetime; clients should
    also drop their stored tokens.
    """
    payload = request.state.token_payload
    exp = payload.get("exp", 0)
    remaining = max(0, exp - int(datetime.now(timezone.utc).timestamp()))

    if blacklist_token(credentials.credentials, payload.get("jti"), remaining + 60):
        logger.info(f"User {current_user.id} logged out successfully")
    else:
        logger.warning(f"Could not blacklist token of user {current_user.id}")

    return success(message="Logged out successfully")
