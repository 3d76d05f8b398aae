from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from jose import JWTError, jwt
import base64
import bcrypt
import hashlib
import hmac
import io
import logging
import secrets
import uuid

import pyotp
import qrcode

from config import get_settings
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)

settings = get_settings()

ALGORITHM = settings.jwt_algorithm
ACCESS_TOKEN_EXPIRE = settings.jwt_expires_in
REFRESH_TOKEN_EXPIRE = settings.jwt_refresh_expires_in
TWO_FACTOR_TOKEN_EXPIRE = timedelta(minutes=get_business_rules().TWO_FACTOR_TOKEN_MINUTES)
PASSWORD_RESET_EXPIRE = timedelta(minutes=get_business_rules().PASSWORD_RESET_MINUTES)
TOTP_VALID_WINDOW = 2

TWO_FACTOR_PURPOSE = "2fa_verify"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash using bcrypt directly"""
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        return False

def get_password_hash(password: str) -> str:
    """Generate password hash using bcrypt directly"""
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def _encode(data: dict, token_type: str, expires_delta: timedelta, secret: str) -> str:
    to_encode = data.copy()
    to_encode.update({
        "exp": datetime.now(timezone.utc) + expires_delta,
        "type": token_type,
        "jti": str(uuid.uuid4())
    })
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)

def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Short-lived bearer token carrying the user id"""
    return _encode({"sub": user_id}, "access", expires_delta or ACCESS_TOKEN_EXPIRE, settings.jwt_secret)

def create_refresh_token(user_id: str) -> str:
    """Long-lived token, signed with its own secret"""
    return _encode({"sub": user_id}, "refresh", REFRESH_TOKEN_EXPIRE, settings.jwt_refresh_secret)

def create_two_factor_token(user_id: str) -> str:
    """Handshake token issued after the password step of login"""
    return _encode(
        {"sub": user_id, "purpose": TWO_FACTOR_PURPOSE},
        "2fa",
        TWO_FACTOR_TOKEN_EXPIRE,
        settings.jwt_secret,
    )

def create_token_pair(user_id: str) -> Tuple[str, str]:
    return create_access_token(user_id), create_refresh_token(user_id)


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify an access or 2FA token, checking blacklist"""
    from services.token_blacklist import is_token_blacklisted

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if is_token_blacklisted(token, payload.get("jti")):
        return None
    return payload

def decode_refresh_token(token: str) -> Optional[dict]:
    try:
        payload = jwt.decode(token, settings.jwt_refresh_secret, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "refresh":
        return None
    return payload


# TOTP (RFC 6238, 30 s step, 6 digits)

def generate_totp_secret() -> str:
    return pyotp.random_base32()

def totp_provisioning_uri(secret: str, account_name: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(
        name=account_name,
        issuer_name=settings.totp_issuer,
    )

def verify_totp(secret: Optional[str], token: str, for_time: Optional[datetime] = None) -> bool:
    """Accept codes up to two steps either side of ``for_time`` (default now)."""
    if not secret or not token:
        return False
    token = token.strip()
    if len(token) != 6 or not token.isdigit():
        return False
    totp = pyotp.TOTP(secret)
    if for_time is None:
        return totp.verify(token, valid_window=TOTP_VALID_WINDOW)
    return totp.verify(token, for_time=for_time, valid_window=TOTP_VALID_WINDOW)

def qr_code_data_uri(otp_auth_url: str) -> str:
    img = qrcode.make(otp_auth_url)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


# Password reset tokens are emailed in clear and stored hashed

def generate_reset_token() -> Tuple[str, str]:
    """Return (token for the email, digest to store on the user)."""
    token = secrets.token_urlsafe(32)
    return token, hash_reset_token(token)

def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()

def reset_token_matches(token: str, stored_digest: Optional[str]) -> bool:
    if not stored_digest:
        return False
    return hmac.compare_digest(hash_reset_token(token), stored_digest)
