from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pyotp
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.ilves.audit import record_event
from app.ilves.certificates import (
    CertificateError,
    certificate_to_pem,
    generate_self_signed_certificate,
    get_certificate,
    remove_certificate,
)
from app.ilves.constants import TOTP_ISSUER
from app.ilves.models import Company, Role, User

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class KeyStoreLocation:
    path: str
    password: str
    entry_password: str


def list_users(s: Session, company: Company) -> list[User]:
    return (
        s.query(User)
        .filter(User.owner_id == company.id)
        .order_by(User.last_name.asc(), User.first_name.asc(), User.email.asc())
        .all()
    )


def get_user(s: Session, company: Company, user_id: int) -> User | None:
    return s.query(User).filter(User.id == user_id, User.owner_id == company.id).one_or_none()


def validate_user_payload(s: Session, company: Company, payload: dict[str, Any], *, user: User | None = None) -> list[str]:
    errors: list[str] = []
    email = (payload.get("email") or "").strip().lower()
    if not _EMAIL_RE.match(email):
        errors.append("A valid email address is required.")
    else:
        clash = s.query(User).filter(User.owner_id == company.id, User.email == email).one_or_none()
        if clash is not None and (user is None or clash.id != user.id):
            errors.append("Another user already has that email address.")
    password = payload.get("password") or ""
    if user is None and len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    elif password and len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return errors


def _set_roles(s: Session, user: User, role_keys: list[str]) -> None:
    roles = s.query(Role).filter(Role.key.in_(role_keys)).all() if role_keys else []
    user.roles = roles


def create_user(s: Session, company: Company, payload: dict[str, Any], *, actor: User) -> User:
    now = datetime.utcnow()
    u = User(
        owner_id=company.id,
        email=(payload.get("email") or "").strip().lower(),
        first_name=(payload.get("first_name") or "").strip() or None,
        last_name=(payload.get("last_name") or "").strip() or None,
        password_hash=generate_password_hash(payload.get("password") or ""),
        is_active=True,
        created=now,
        modified=now,
    )
    s.add(u)
    _set_roles(s, u, list(payload.get("role_keys") or []))
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"email": u.email, "roles": sorted(r.key for r in u.roles)},
    )
    return u


def update_user(s: Session, u: User, payload: dict[str, Any], *, actor: User) -> User:
    before = {
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "is_active": u.is_active,
        "roles": sorted(r.key for r in u.roles),
    }
    u.email = (payload.get("email") or "").strip().lower()
    u.first_name = (payload.get("first_name") or "").strip() or None
    u.last_name = (payload.get("last_name") or "").strip() or None
    if u.id != actor.id:
        u.is_active = bool(payload.get("is_active"))
    if payload.get("password"):
        u.password_hash = generate_password_hash(payload["password"])
    _set_roles(s, u, list(payload.get("role_keys") or []))
    u.modified = datetime.utcnow()
    after = {
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "is_active": u.is_active,
        "roles": sorted(r.key for r in u.roles),
    }
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(u.id),
        metadata={
            "before": before,
            "after": after,
            "password_changed": bool(payload.get("password")),
            "fields_changed": [k for k in before if before[k] != after[k]],
        },
    )
    return u


def remove_user(s: Session, u: User, *, actor: User) -> str | None:
    """
    Delete the user. Returns the certificate alias to drop from the key store
    once the deletion is committed.
    """
    if u.id == actor.id:
        raise ValueError("You cannot remove your own account.")
    alias = u.certificate_alias
    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"email": u.email},
    )
    s.delete(u)
    return alias


def enable_totp(s: Session, u: User, *, actor: User) -> str:
    """Register a Google Authenticator device. Returns the provisioning URI."""
    u.totp_secret = pyotp.random_base32()
    u.modified = datetime.utcnow()
    record_event(s, actor=actor, action="user.totp_enable", entity_type="User", entity_id=str(u.id))
    return totp_provisioning_uri(u)


def totp_provisioning_uri(u: User) -> str:
    if not u.totp_secret:
        raise ValueError("User has no authenticator device.")
    return pyotp.TOTP(u.totp_secret).provisioning_uri(name=u.email, issuer_name=TOTP_ISSUER)


def disable_totp(s: Session, u: User, *, actor: User) -> None:
    u.totp_secret = None
    u.modified = datetime.utcnow()
    record_event(s, actor=actor, action="user.totp_disable", entity_type="User", entity_id=str(u.id))


def issue_client_certificate(s: Session, u: User, *, actor: User, key_store: KeyStoreLocation) -> str:
    """
    Generate a self-signed client certificate for the user and register it.
    Returns the new alias (certificate fingerprint). The previous alias stays
    in the key store until the caller has committed the user row.
    """
    previous = u.certificate_alias
    alias = generate_self_signed_certificate(
        u.email,
        None,
        key_store.path,
        key_store.password,
        key_store.entry_password,
    )
    try:
        certificate = get_certificate(alias, key_store.path, key_store.password)
        if certificate is None:
            raise CertificateError(f"Certificate '{alias}' missing from key store after generation.")
    except CertificateError:
        remove_certificate(alias, key_store.path, key_store.password)
        raise
    u.certificate_alias = alias
    u.certificate_pem = certificate_to_pem(certificate)
    u.modified = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="user.certificate_issue",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"alias": alias, "previous_alias": previous},
    )
    return alias


def revoke_client_certificate(s: Session, u: User, *, actor: User) -> str | None:
    """Unregister the user's certificate. Returns the alias to drop from the key store after commit."""
    alias = u.certificate_alias
    if not alias:
        return None
    u.certificate_alias = None
    u.certificate_pem = None
    u.modified = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="user.certificate_revoke",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"alias": alias},
    )
    return alias


def discard_certificates(key_store: KeyStoreLocation, *aliases: str | None) -> None:
    """Remove key store entries that no committed user row refers to any more."""
    for alias in aliases:
        if alias:
            remove_certificate(alias, key_store.path, key_store.password)
