from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tool_lending.db.session import transaction
from tool_lending.models.lending_models import LOAN_ACTIVE, ROLE_USER, USER_ROLES, Loan, User
from tool_lending.schemas.users import AdminUserCreate, AdminUserUpdate, ProfileUpdate, RegisterRequest
from tool_lending.services.audit_service import log_audit
from tool_lending.services.errors import AuthenticationFailed, NotFound, ValidationFailed


LOGGER = logging.getLogger("tool_lending.auth")

MIN_PASSWORD_LENGTH = 6
PBKDF2_ROUNDS = 120000

# Applied in this order regardless of the order fields arrive in.
USER_UPDATE_FIELDS = ("fullName", "email", "password", "role", "phone")


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ROUNDS,
    )
    return raw.hex()


def set_password(user: User, password: str) -> None:
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = _password_hash(password, salt)


def verify_password(user: User, candidate: str) -> bool:
    if not user.PasswordHash or not user.PasswordSalt:
        return False
    return hmac.compare_digest(_password_hash(candidate, user.PasswordSalt), user.PasswordHash)


def _normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def _require_new_password(password: str | None) -> str:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"The password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return password


def _require_role(role: str | None) -> str:
    if role not in USER_ROLES:
        raise ValidationFailed("Invalid role. Must be one of: " + ", ".join(sorted(USER_ROLES)))
    return role


def _email_taken(db: Session, email: str, exclude_user_id: int | None = None) -> bool:
    stmt = select(User.UserID).where(func.lower(User.Email) == email)
    if exclude_user_id is not None:
        stmt = stmt.where(User.UserID != exclude_user_id)
    return db.execute(stmt).first() is not None


def serialize_user(user: User) -> dict:
    return {
        "userID": user.UserID,
        "fullName": user.FullName,
        "email": user.Email,
        "phone": user.Phone,
        "role": user.Role,
        "createdDate": user.CreatedDate,
    }


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def find_user_by_email(db: Session, email: str | None) -> User | None:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(User).where(func.lower(User.Email) == normalized)).scalars().first()


def list_users(db: Session) -> list[User]:
    return list(db.execute(select(User).order_by(User.CreatedDate.desc(), User.UserID.desc())).scalars().all())


def register(db: Session, payload: RegisterRequest) -> User:
    name = (payload.fullName or "").strip()
    email = _normalize_email(payload.email)
    if not name or not email or not payload.password:
        raise ValidationFailed("Name, email and password are required")

    with transaction(db):
        if _email_taken(db, email):
            raise ValidationFailed("The email is already registered")
        now = datetime.now()
        user = User(
            FullName=name,
            Email=email,
            Phone=(payload.phone or "").strip() or None,
            Role=ROLE_USER,
            CreatedDate=now,
            UpdatedDate=now,
        )
        set_password(user, payload.password)
        db.add(user)
        db.flush()
    LOGGER.info("User %s registered", user.UserID)
    return user


def authenticate(db: Session, email: str | None, password: str | None) -> User:
    user = find_user_by_email(db, email)
    if not user or not verify_password(user, password or ""):
        LOGGER.warning("Rejected login for %s", _normalize_email(email) or "<blank>")
        raise AuthenticationFailed("Invalid credentials")
    return user


def update_profile(db: Session, user_id: int, payload: ProfileUpdate) -> User:
    name = (payload.fullName or "").strip()
    email = _normalize_email(payload.email)
    if not name or not email:
        raise ValidationFailed("Name and email are required")

    with transaction(db):
        user = get_user_or_404(db, user_id)
        if _email_taken(db, email, exclude_user_id=user_id):
            raise ValidationFailed("The email is already in use")
        user.FullName = name
        user.Email = email
        user.Phone = (payload.phone or "").strip() or None
        user.UpdatedDate = datetime.now()
    return user


def change_password(db: Session, user_id: int, current_password: str, new_password: str) -> None:
    if not current_password or not new_password:
        raise ValidationFailed("Current and new password are required")
    _require_new_password(new_password)

    with transaction(db):
        user = get_user_or_404(db, user_id)
        if not verify_password(user, current_password):
            raise AuthenticationFailed("The current password is incorrect")
        set_password(user, new_password)
        user.UpdatedDate = datetime.now()
    LOGGER.info("User %s changed their password", user_id)


def request_password_reset(db: Session, email: str | None, ttl_minutes: int) -> tuple[User, str]:
    """Store a fresh 6-digit reset code on the account and return it for delivery."""
    if not _normalize_email(email):
        raise ValidationFailed("Email is required")

    with transaction(db):
        user = find_user_by_email(db, email)
        if not user:
            raise NotFound("There is no account with that email")
        code = f"{secrets.randbelow(1000000):06d}"
        user.ResetCode = code
        user.ResetCodeExpires = datetime.now() + timedelta(minutes=ttl_minutes)
    LOGGER.info("Password reset code issued for user %s", user.UserID)
    return user, code


def reset_password(db: Session, email: str | None, code: str | None, new_password: str | None) -> None:
    if not _normalize_email(email) or not code or not new_password:
        raise ValidationFailed("Email, code and new password are required")
    _require_new_password(new_password)

    with transaction(db):
        user = find_user_by_email(db, email)
        if not user or not user.ResetCode or not hmac.compare_digest(user.ResetCode, code.strip()):
            raise ValidationFailed("Invalid code")
        if not user.ResetCodeExpires or user.ResetCodeExpires < datetime.now():
            raise ValidationFailed("The code has expired. Request a new one.")
        set_password(user, new_password)
        user.ResetCode = None
        user.ResetCodeExpires = None
        user.UpdatedDate = datetime.now()
    LOGGER.info("User %s reset their password", user.UserID)


def create_user(db: Session, payload: AdminUserCreate, actor_id: int) -> User:
    name = (payload.fullName or "").strip()
    email = _normalize_email(payload.email)
    if not name or not email or not payload.password:
        raise ValidationFailed("Name, email and password are required")
    role = _require_role(payload.role or ROLE_USER)

    with transaction(db):
        if _email_taken(db, email):
            raise ValidationFailed("The email is already registered")
        now = datetime.now()
        user = User(
            FullName=name,
            Email=email,
            Phone=(payload.phone or "").strip() or None,
            Role=role,
            CreatedDate=now,
            UpdatedDate=now,
        )
        set_password(user, payload.password)
        db.add(user)
        db.flush()
        log_audit(db, "user", user.UserID, "create_user", f"User created: {email} ({role})", user_id=actor_id)
    return user


def update_user(db: Session, user_id: int, payload: AdminUserUpdate, actor_id: int) -> User:
    data = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
    if not any(field in data for field in USER_UPDATE_FIELDS):
        raise ValidationFailed("No fields to update")

    with transaction(db):
        user = get_user_or_404(db, user_id)
        changed: list[str] = []
        for field in USER_UPDATE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "fullName":
                value = value.strip()
                if not value:
                    raise ValidationFailed("Name cannot be empty")
                user.FullName = value
            elif field == "email":
                value = _normalize_email(value)
                if not value:
                    raise ValidationFailed("Email cannot be empty")
                if _email_taken(db, value, exclude_user_id=user_id):
                    raise ValidationFailed("The email is already in use by another user")
                user.Email = value
            elif field == "password":
                set_password(user, value)
            elif field == "role":
                user.Role = _require_role(value)
            elif field == "phone":
                user.Phone = value.strip() or None
            changed.append(field)

        user.UpdatedDate = datetime.now()
        log_audit(db, "user", user.UserID, "update_user", f"Fields: {', '.join(changed)}", user_id=actor_id)
    return user


def delete_user(db: Session, user_id: int, actor_id: int) -> None:
    if user_id == actor_id:
        raise ValidationFailed("You cannot delete your own account")

    with transaction(db):
        active = db.execute(
            select(func.count(Loan.LoanID))
            .where(Loan.UserID == user_id)
            .where(Loan.Status == LOAN_ACTIVE)
        ).scalar()
        if active:
            raise ValidationFailed("Cannot delete. The user has active loans")
        user = get_user_or_404(db, user_id)
        email = user.Email
        db.delete(user)
        log_audit(db, "user", user_id, "delete_user", f"User deleted: {email}", user_id=actor_id)
    LOGGER.info("User %s deleted by %s", user_id, actor_id)


def change_role(db: Session, user_id: int, role: str | None, actor_id: int) -> User:
    role = _require_role(role)
    if user_id == actor_id:
        raise ValidationFailed("You cannot change your own role")

    with transaction(db):
        user = get_user_or_404(db, user_id)
        previous = user.Role
        user.Role = role
        user.UpdatedDate = datetime.now()
        log_audit(db, "user", user.UserID, "change_role", f"Role changed: {previous} -> {role}", user_id=actor_id)
    return user
