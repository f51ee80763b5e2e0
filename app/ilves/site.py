from __future__ import annotations

import hashlib

from flask import g, has_request_context, request, session
from sqlalchemy.orm import Session

from app.ilves.constants import GRAVATAR_URL
from app.ilves.db import db_session
from app.ilves.models import Company


def resolve_company(s: Session, host: str | None) -> Company | None:
    """
    Company serving the given request host. Falls back to the first company
    so a single-tenant install works on any host name.
    """
    hostname = (host or "").split(":", 1)[0].strip().lower()
    if hostname:
        company = s.query(Company).filter(Company.host == hostname).one_or_none()
        if company:
            return company
    return s.query(Company).order_by(Company.id.asc()).first()


def load_current_company() -> None:
    g.company = resolve_company(db_session(), request.host)


def construct_gravatar_url(email: str) -> str:
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()
    return f"{GRAVATAR_URL}{digest}.jpg?s=32&d=mm&r=g"


def gravatar_url(email: str) -> str:
    """Gravatar image URL, memoised in the session for the session's user."""
    if not has_request_context():
        return construct_gravatar_url(email)
    if session.get("gravatar_email") != email or not session.get("gravatar_url"):
        session["gravatar_email"] = email
        session["gravatar_url"] = construct_gravatar_url(email)
    return session["gravatar_url"]
