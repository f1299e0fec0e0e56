from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import OperatorAccount


ROLE_OPERATOR = "Operator"
ROLE_SUPER_OPERATOR = "SuperOperator"
DEFAULT_ROLE = ROLE_OPERATOR
MIN_PASSWORD_LENGTH = 6

RIGHTS_BY_ROLE = {
    ROLE_SUPER_OPERATOR: {
        "manageAccounts": True,
        "manageSettings": True,
        "manageItems": True,
        "manageBorrowers": True,
        "manageLoans": True,
    },
    ROLE_OPERATOR: {
        "manageAccounts": False,
        "manageSettings": False,
        "manageItems": True,
        "manageBorrowers": True,
        "manageLoans": True,
    },
}

FALLBACK_OPERATOR_ID = "default-admin-uid"
FALLBACK_OPERATOR_NAME = "Principal Administrator"
LOCAL_ADMIN_EMAIL = (os.environ.get("LOCAL_ADMIN_EMAIL") or "admin@toollending.local").strip().lower()
LOCAL_ADMIN_PASSWORD = (os.environ.get("LOCAL_ADMIN_PASSWORD") or "").strip()
FALLBACK_CREATED_DATE = datetime(2024, 1, 1)


class ProtectedAccountError(PermissionError):
    pass


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in RIGHTS_BY_ROLE:
        return role
    raise ValueError(f"Unknown role: {role or '(empty)'}.")


def rights_for_role(role: str | None) -> dict[str, bool]:
    return dict(RIGHTS_BY_ROLE.get(role or "", RIGHTS_BY_ROLE[DEFAULT_ROLE]))


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _validate_password(password: str | None) -> str:
    candidate = str(password or "")
    if len(candidate) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return candidate


def set_operator_password(account: OperatorAccount, password: str) -> None:
    candidate = _validate_password(password)
    account.PasswordSalt = secrets.token_hex(16)
    account.PasswordHash = _password_hash(candidate, account.PasswordSalt)
    account.UpdatedDate = datetime.now()


def is_protected_operator(operator_id: str | None, email: str | None = None) -> bool:
    if operator_id == FALLBACK_OPERATOR_ID:
        return True
    return bool(email) and normalize_email(email) == LOCAL_ADMIN_EMAIL


def fallback_operator_record() -> dict[str, Any]:
    return {
        "operatorID": FALLBACK_OPERATOR_ID,
        "email": LOCAL_ADMIN_EMAIL,
        "name": FALLBACK_OPERATOR_NAME,
        "role": ROLE_SUPER_OPERATOR,
        "rights": rights_for_role(ROLE_SUPER_OPERATOR),
        "createdDate": FALLBACK_CREATED_DATE,
        "isProtected": True,
    }


def serialize_operator(account: OperatorAccount) -> dict[str, Any]:
    return {
        "operatorID": account.OperatorID,
        "email": account.Email,
        "name": account.Name,
        "role": account.Role,
        "rights": rights_for_role(account.Role),
        "createdDate": account.CreatedDate,
        "isProtected": is_protected_operator(account.OperatorID, account.Email),
    }


def find_operator_by_email(db: Session, email: str) -> OperatorAccount | None:
    return db.execute(
        select(OperatorAccount).where(OperatorAccount.Email == normalize_email(email))
    ).scalars().first()


def load_operator_record(db: Session, operator_id: str | None) -> dict[str, Any] | None:
    """Current account state for a signed-in operator id, or None once the account is gone."""
    if not operator_id:
        return None
    if operator_id == FALLBACK_OPERATOR_ID:
        return fallback_operator_record() if LOCAL_ADMIN_PASSWORD else None
    account = db.get(OperatorAccount, operator_id)
    return serialize_operator(account) if account else None


def list_operators(db: Session) -> list[dict[str, Any]]:
    accounts = db.execute(select(OperatorAccount).order_by(OperatorAccount.Name)).scalars().all()
    records = [serialize_operator(account) for account in accounts]
    if not any(normalize_email(record["email"]) == LOCAL_ADMIN_EMAIL for record in records):
        records.insert(0, fallback_operator_record())
    return records


def create_operator(
    db: Session,
    *,
    email: str,
    name: str,
    password: str,
    role: str | None = None,
) -> OperatorAccount:
    normalized_email = normalize_email(email)
    if "@" not in normalized_email:
        raise ValueError("Email address is not valid.")
    display_name = (name or "").strip()
    if not display_name:
        raise ValueError("Name is required.")
    next_role = _normalize_role(role or DEFAULT_ROLE)
    _validate_password(password)
    if normalized_email == LOCAL_ADMIN_EMAIL or find_operator_by_email(db, normalized_email):
        raise ValueError("Email already registered.")

    account = OperatorAccount(
        Email=normalized_email,
        Name=display_name,
        Role=next_role,
        CreatedDate=datetime.now(),
    )
    set_operator_password(account, password)
    db.add(account)
    db.flush()
    return account


def update_operator(
    db: Session,
    operator_id: str,
    *,
    name: str | None = None,
    role: str | None = None,
) -> OperatorAccount | None:
    if is_protected_operator(operator_id):
        raise ProtectedAccountError("The principal administrator account cannot be edited.")
    account = db.get(OperatorAccount, operator_id)
    if not account:
        return None
    if is_protected_operator(account.OperatorID, account.Email):
        raise ProtectedAccountError("The principal administrator account cannot be edited.")
    if name is not None:
        display_name = name.strip()
        if not display_name:
            raise ValueError("Name is required.")
        account.Name = display_name
    if role is not None:
        account.Role = _normalize_role(role)
    account.UpdatedDate = datetime.now()
    return account


def delete_operator(db: Session, operator_id: str, *, actor_id: str | None) -> bool:
    if is_protected_operator(operator_id):
        raise ProtectedAccountError("The principal administrator account cannot be deleted.")
    if actor_id and operator_id == actor_id:
        raise ProtectedAccountError("You cannot delete your own account.")
    account = db.get(OperatorAccount, operator_id)
    if not account:
        return False
    if is_protected_operator(account.OperatorID, account.Email):
        raise ProtectedAccountError("The principal administrator account cannot be deleted.")
    db.delete(account)
    return True


def verify_credentials(db: Session, email: str, password: str) -> dict[str, Any] | None:
    normalized_email = normalize_email(email)
    candidate = password or ""
    if not normalized_email or not candidate:
        return None

    if normalized_email == LOCAL_ADMIN_EMAIL:
        if LOCAL_ADMIN_PASSWORD and hmac.compare_digest(candidate, LOCAL_ADMIN_PASSWORD):
            return fallback_operator_record()
        return None

    account = find_operator_by_email(db, normalized_email)
    if not account or not account.PasswordHash or not account.PasswordSalt:
        return None
    if not hmac.compare_digest(_password_hash(candidate, account.PasswordSalt), account.PasswordHash):
        return None
    return serialize_operator(account)
