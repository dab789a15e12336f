from __future__ import annotations

import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from campus_rentals.models.market_models import User
from campus_rentals.services import mail_service
from campus_rentals.services.errors import Conflict, RateLimited, Unauthorized, ValidationError
from campus_rentals.services.user_access_service import hash_password, verify_password


LOGGER = logging.getLogger("campus_rentals.auth")

VERIFICATION_CODE_TTL_SECONDS = int(os.environ.get("VERIFICATION_CODE_TTL_SECONDS") or "3600")
VERIFICATION_RESEND_INTERVAL_SECONDS = int(os.environ.get("VERIFICATION_RESEND_INTERVAL_SECONDS") or "60")
MIN_PASSWORD_LENGTH = 6

PROFILE_FIELDS = {
    "name": "Name",
    "bio": "Bio",
    "location": "Location",
    "venmo_handle": "VenmoHandle",
    "cashapp_tag": "CashAppTag",
}


def derive_school(email: str) -> str:
    value = (email or "").strip()
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValidationError("A valid school email address is required.")
    return domain.lower()


def generate_verification_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _issue_code(user: User) -> str:
    code = generate_verification_code()
    user.VerificationCode = code
    user.VerificationCodeIssuedAt = datetime.now()
    return code


def register_user(db: Session, values: dict[str, Any]) -> User:
    username = (values.get("username") or "").strip()
    password = values.get("password") or ""
    email = (values.get("email") or "").strip().lower()
    if not username:
        raise ValidationError("username is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    school = derive_school(email)

    taken = db.execute(
        select(User.UserID).where(
            (func.lower(User.Username) == username.lower()) | (User.Email == email)
        )
    ).first()
    if taken:
        raise Conflict("Username or email already registered.")

    password_hash, password_salt = hash_password(password)
    user = User(
        Username=username,
        PasswordHash=password_hash,
        PasswordSalt=password_salt,
        Name=(values.get("name") or "").strip() or username,
        Email=email,
        School=school,
        IsVerified=False,
        CreatedDate=datetime.now(),
    )
    code = _issue_code(user)
    db.add(user)
    db.commit()
    db.refresh(user)
    LOGGER.info("Registered user %s for school %s", user.UserID, school)

    mail_service.send_verification_email(user.Email, code)
    return user


def authenticate(db: Session, username: str, password: str) -> User:
    candidate = (username or "").strip().lower()
    user = db.execute(select(User).where(func.lower(User.Username) == candidate)).scalars().first()
    if not user or not verify_password(password or "", user.PasswordHash, user.PasswordSalt):
        LOGGER.warning("Failed login for username=%s", candidate)
        raise Unauthorized("Invalid credentials.")
    return user


def verify_user(db: Session, user: User, submitted_code: str) -> bool:
    if user.IsVerified:
        return True
    code = (submitted_code or "").strip()
    stored = user.VerificationCode or ""
    if not code or not stored:
        return False
    issued_at = user.VerificationCodeIssuedAt
    if issued_at is None or datetime.now() - issued_at > timedelta(seconds=VERIFICATION_CODE_TTL_SECONDS):
        LOGGER.info("Expired verification code submitted by user %s", user.UserID)
        return False
    if not hmac.compare_digest(code, stored):
        LOGGER.warning("Wrong verification code submitted by user %s", user.UserID)
        return False

    user.IsVerified = True
    user.VerificationCode = None
    user.VerificationCodeIssuedAt = None
    db.commit()
    LOGGER.info("User %s verified", user.UserID)
    return True


def resend_verification_code(db: Session, user: User) -> bool:
    if user.IsVerified:
        raise Conflict("Account is already verified.")
    issued_at = user.VerificationCodeIssuedAt
    if issued_at is not None:
        elapsed = (datetime.now() - issued_at).total_seconds()
        if elapsed < VERIFICATION_RESEND_INTERVAL_SECONDS:
            retry_after = max(1, int(VERIFICATION_RESEND_INTERVAL_SECONDS - elapsed))
            raise RateLimited("Please wait before requesting another code.", retry_after)

    code = _issue_code(user)
    db.commit()
    return mail_service.send_verification_email(user.Email, code)


def update_profile(db: Session, user: User, values: dict[str, Any]) -> User:
    for key, column in PROFILE_FIELDS.items():
        if key in values and values[key] is not None:
            setattr(user, column, str(values[key]).strip())
    db.commit()
    db.refresh(user)
    return user


def change_password(db: Session, user: User, new_password: str) -> None:
    if len(new_password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    user.PasswordHash, user.PasswordSalt = hash_password(new_password)
    db.commit()


def serialize_user(user: User) -> dict:
    return {
        "id": user.UserID,
        "username": user.Username,
        "name": user.Name,
        "email": user.Email,
        "school": user.School,
        "isVerified": bool(user.IsVerified),
        "bio": user.Bio,
        "location": user.Location,
        "venmo_handle": user.VenmoHandle,
        "cashapp_tag": user.CashAppTag,
        "createdAt": user.CreatedDate,
    }
