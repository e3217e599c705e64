import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

import bcrypt
import requests
from pymongo import ReturnDocument

from .errors import (
    AccountLocked,
    AuthenticationError,
    UpstreamError,
    ValidationError,
    field_error,
)
from .helpers import check_length, is_valid_email, isoformat, normalize_email

OTP_CODE_LENGTH = 6
OTP_EXPIRATION_MINUTES = 10
MAX_FAILED_OTP_ATTEMPTS = 5
MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(hours=2)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class AdminPolicy:
    """Decides who may use the admin routes.

    The allow-list is fixed when the app is built; it is never re-read from
    the environment.
    """

    def __init__(self, admin_emails: Iterable[str]):
        self.admin_emails: FrozenSet[str] = frozenset(
            normalize_email(email) for email in admin_emails if normalize_email(email)
        )

    def is_admin(self, user_document: Optional[Dict]) -> bool:
        if not user_document:
            return False
        return normalize_email(user_document.get("email")) in self.admin_emails


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, password_hash) -> bool:
    if not password or not password_hash:
        return False
    if isinstance(password_hash, str):
        password_hash = password_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash)
    except ValueError:
        return False


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    upper_bound = 10**length
    return f"{secrets.randbelow(upper_bound):0{length}d}"


def validate_email_field(errors: List[Dict[str, str]], value) -> str:
    email = normalize_email(value)
    if not is_valid_email(email):
        errors.append(field_error("email", "Valid email required"))
    return email


def validate_password_field(
    errors: List[Dict[str, str]], value, field: str = "password", label: str = "Password"
) -> str:
    password = str(value or "")
    if not 8 <= len(password) <= 32:
        errors.append(field_error(field, f"{label} must be 8-32 characters"))
    return password


def validate_signup(payload: Dict) -> Dict[str, str]:
    errors: List[Dict[str, str]] = []
    email = validate_email_field(errors, payload.get("email"))
    password = validate_password_field(errors, payload.get("password"))
    name = check_length(errors, "name", payload.get("name"), 2, 50, "Name")
    if errors:
        raise ValidationError("Validation failed", errors)
    return {"email": email, "password": password, "name": name}


def validate_credentials(payload: Dict) -> Dict[str, str]:
    errors: List[Dict[str, str]] = []
    email = validate_email_field(errors, payload.get("email"))
    password = validate_password_field(errors, payload.get("password"))
    if errors:
        raise ValidationError("Validation failed", errors)
    return {"email": email, "password": password}


def start_pending_registration(db, email: str, name: str, password: str, now=None):
    """Store a pending sign-up and return ``(otp, expires_at)``.

    The user row itself is only created once the code is confirmed.
    """
    now = now or datetime.utcnow()
    otp = generate_otp_code()
    expires_at = now + timedelta(minutes=OTP_EXPIRATION_MINUTES)
    fields = {
        "email": email,
        "otp_hash": bcrypt.hashpw(otp.encode("utf-8"), bcrypt.gensalt()),
        "expires_at": expires_at,
        "failed_attempts": 0,
        "created_at": now,
    }
    if name:
        fields["name"] = name
    if password:
        fields["password_hash"] = hash_password(password)
    db.email_verifications.update_one({"email": email}, {"$set": fields}, upsert=True)
    return otp, expires_at


def confirm_pending_registration(db, email: str, code: str, now=None) -> Dict:
    """Check a verification code and consume the pending record."""
    now = now or datetime.utcnow()
    if not (code.isdigit() and len(code) == OTP_CODE_LENGTH):
        raise ValidationError(
            "Validation failed",
            [field_error("code", "Verification code must be 6 digits")],
        )

    record = db.email_verifications.find_one({"email": email})
    if not record:
        raise ValidationError(
            "No verification request found for this email. Please register again."
        )

    expires_at = record.get("expires_at")
    if not isinstance(expires_at, datetime) or expires_at < now:
        db.email_verifications.delete_one({"_id": record["_id"]})
        raise ValidationError("Verification code has expired")

    if not check_password(code, record.get("otp_hash")):
        failed_attempts = int(record.get("failed_attempts", 0) or 0) + 1
        if failed_attempts >= MAX_FAILED_OTP_ATTEMPTS:
            db.email_verifications.delete_one({"_id": record["_id"]})
            raise ValidationError(
                "Too many incorrect attempts. Please request a new verification code."
            )
        db.email_verifications.update_one(
            {"_id": record["_id"]}, {"$set": {"failed_attempts": failed_attempts}}
        )
        raise ValidationError("Invalid verification code")

    db.email_verifications.delete_one({"_id": record["_id"]})
    return record


def is_locked(user_document: Dict, now=None) -> bool:
    lock_until = user_document.get("lock_until")
    return isinstance(lock_until, datetime) and lock_until > (now or datetime.utcnow())


def register_failed_login(db, user_document: Dict, now=None) -> None:
    now = now or datetime.utcnow()
    user_id = user_document["_id"]

    # An expired lock starts a fresh count.
    db.users.update_one(
        {"_id": user_id, "lock_until": {"$lte": now}},
        {"$set": {"login_attempts": 0}, "$unset": {"lock_until": ""}},
    )
    updated = db.users.find_one_and_update(
        {"_id": user_id},
        {"$inc": {"login_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated and int(updated.get("login_attempts") or 0) >= MAX_LOGIN_ATTEMPTS:
        db.users.update_one(
            {"_id": user_id, "lock_until": {"$exists": False}},
            {"$set": {"lock_until": now + LOCK_DURATION}},
        )


def authenticate_password(db, email: str, password: str, now=None) -> Dict:
    now = now or datetime.utcnow()
    user = db.users.find_one({"email": email})
    if not user:
        raise AuthenticationError("Invalid email or password")

    if is_locked(user, now):
        raise AccountLocked()

    if not check_password(password, user.get("password_hash")):
        register_failed_login(db, user, now)
        raise AuthenticationError("Invalid email or password")

    return user


def record_successful_login(db, user_document: Dict, now=None) -> Dict:
    now = now or datetime.utcnow()
    db.users.update_one(
        {"_id": user_document["_id"]},
        {
            "$set": {"last_login_at": now, "login_attempts": 0},
            "$unset": {"lock_until": ""},
        },
    )
    return db.users.find_one({"_id": user_document["_id"]})


class GoogleIdentityVerifier:
    """Validates Google Sign-In ID tokens against the tokeninfo endpoint."""

    def __init__(
        self,
        client_id: str,
        timeout: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.client_id = client_id
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def verify(self, credential: str) -> Dict[str, str]:
        if not self.client_id:
            raise UpstreamError("Google sign-in is not configured.")

        try:
            response = requests.get(
                GOOGLE_TOKENINFO_URL,
                params={"id_token": credential},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("Google token verification request failed: %s", exc)
            raise UpstreamError("Google authentication failed") from exc

        if response.status_code != 200:
            raise AuthenticationError("Invalid Google credential")

        claims = response.json()
        if claims.get("aud") != self.client_id:
            raise AuthenticationError("Invalid Google credential")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise AuthenticationError("Invalid Google credential")

        email = normalize_email(claims.get("email"))
        email_verified = str(claims.get("email_verified", "")).lower() == "true"
        if not email or not email_verified:
            raise ValidationError("Google account email not verified")

        return {
            "google_id": str(claims.get("sub") or ""),
            "email": email,
            "name": str(claims.get("name") or email.split("@")[0]).strip(),
            "picture": str(claims.get("picture") or ""),
        }


def serialize_user(user_document, is_admin: bool = False) -> Dict[str, object]:
    if not user_document:
        return {}
    return {
        "id": str(user_document.get("_id")),
        "email": user_document.get("email", "") or "",
        "name": user_document.get("name", "") or "",
        "avatar": user_document.get("avatar", "") or "",
        "isVerified": bool(user_document.get("is_verified")),
        "isAdmin": is_admin,
        "hasPassword": bool(user_document.get("password_hash")),
        "googleId": user_document.get("google_id") or None,
        "lastLogin": isoformat(user_document.get("last_login_at")),
        "createdAt": isoformat(user_document.get("created_at")),
    }
