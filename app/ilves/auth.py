from __future__ import annotations

import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

import pyotp
from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, session, url_for
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.ilves.audit import record_event
from app.ilves.client_certificates import certificate_from_request
from app.ilves.constants import AuthenticationDeviceType
from app.ilves.db import db_session
from app.ilves.models import Company, User
from app.ilves.site import load_current_company

bp = Blueprint("auth", __name__)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
_PENDING_LOGIN_MAX_AGE = 300  # seconds
_MIN_PASSWORD_LENGTH = 8


def _login_attempts() -> dict[str, list[datetime]]:
    return current_app.extensions.setdefault("login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> bool:
    attempts = _login_attempts()
    cutoff = datetime.utcnow() - timedelta(seconds=_LOGIN_RATE_WINDOW)
    attempts[ip] = [t for t in attempts[ip] if t > cutoff]
    return len(attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts()[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only allow local paths to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def find_user(s: Session, company: Company | None, email: str) -> User | None:
    if company is None:
        return None
    return s.query(User).filter(User.owner_id == company.id, User.email == email).one_or_none()


def get_authentication_device_type(s: Session, company: Company | None, email: str) -> AuthenticationDeviceType:
    user = find_user(s, company, email)
    if user is not None and user.totp_secret:
        return AuthenticationDeviceType.GOOGLE_AUTHENTICATOR
    return AuthenticationDeviceType.NONE


def authenticate(s: Session, company: Company | None, email: str, password: str) -> User | None:
    user = find_user(s, company, email)
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return None
    return user


def verify_totp(user: User, code: str) -> bool:
    if not user.totp_secret:
        return False
    return pyotp.TOTP(user.totp_secret).verify((code or "").strip(), valid_window=1)


def _complete_login(s: Session, user: User, *, method: str) -> None:
    session.pop("pending_user_id", None)
    session.pop("pending_since", None)
    session["user_id"] = user.id
    _login_attempts().pop(request.remote_addr or "unknown", None)
    record_event(
        s,
        actor=user,
        action="auth.login",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"method": method},
    )
    s.commit()
    g.current_user = user
    current_app.logger.info("Login ok (user_id=%s method=%s)", user.id, method)


def _login_failed(s: Session, email: str, reason: str) -> None:
    record_event(
        s,
        actor=None,
        action="auth.login_failed",
        entity_type="User",
        entity_id=email,
        reason=reason,
        metadata={"email": email},
    )
    s.commit()
    current_app.logger.warning("Login failed (email=%s reason=%s request_id=%s)", email, reason, g.get("request_id"))


def _redirect_after_login(nxt: str | None = None):
    target = _safe_next(nxt or "")
    if target:
        return redirect(target)
    return redirect(url_for("admin.index"))


def _login_with_client_certificate(s: Session) -> User | None:
    cache = current_app.extensions.get("client_certificate_cache")
    company = getattr(g, "company", None)
    if cache is None or company is None:
        return None
    certificate = certificate_from_request(request.environ, current_app.config.get("CLIENT_CERTIFICATE_HEADER") or "")
    if certificate is None:
        return None
    user = cache.get_user_by_certificate(certificate, True, session=s)
    if user is None or user.owner_id != company.id:
        return None
    _complete_login(s, user, method="certificate")
    return user


def load_current_user() -> None:
    """
    Loads g.company from the request host and g.current_user from the signed
    session cookie, falling back to a registered client certificate.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None

    try:
        s = db_session()
        load_current_company()
        company = g.company

        user_id = session.get("user_id")
        if not user_id:
            _login_with_client_certificate(s)
            return

        user = s.get(User, int(user_id))
        if not user or not user.is_active or company is None or user.owner_id != company.id:
            session.pop("user_id", None)
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None):
        return redirect(url_for("admin.index"))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt, company=g.company)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    try:
        s = db_session()
        company = g.company
        device_type = get_authentication_device_type(s, company, email)
        user = authenticate(s, company, email, password)
        if user is None:
            _login_failed(s, email, "Invalid credentials")
            flash("Invalid credentials.", "danger")
            return redirect(url_for("auth.login_get", next=nxt or None))

        if device_type == AuthenticationDeviceType.GOOGLE_AUTHENTICATOR:
            session["pending_user_id"] = user.id
            session["pending_since"] = int(time.time())
            session["pending_next"] = nxt
            return redirect(url_for("auth.totp_get"))

        _complete_login(s, user, method="password")
        return _redirect_after_login(nxt)
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


def _pending_user(s: Session) -> User | None:
    user_id = session.get("pending_user_id")
    since = int(session.get("pending_since") or 0)
    if not user_id or time.time() - since > _PENDING_LOGIN_MAX_AGE:
        return None
    user = s.get(User, int(user_id))
    if not user or not user.is_active or user.owner_id != getattr(g.company, "id", None):
        return None
    return user


@bp.get("/login/totp")
def totp_get():
    s = db_session()
    if _pending_user(s) is None:
        flash("Please log in again.", "danger")
        return redirect(url_for("auth.login_get"))
    return render_template("auth/totp.html")


@bp.post("/login/totp")
def totp_post():
    s = db_session()
    user = _pending_user(s)
    if user is None:
        flash("Please log in again.", "danger")
        return redirect(url_for("auth.login_get"))

    ip = request.remote_addr or "unknown"
    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    _record_attempt(ip)

    if not verify_totp(user, request.form.get("code") or ""):
        _login_failed(s, user.email, "Invalid authenticator code")
        flash("Invalid authenticator code.", "danger")
        return redirect(url_for("auth.totp_get"))

    nxt = session.pop("pending_next", "") or ""
    _complete_login(s, user, method="totp")
    return _redirect_after_login(nxt)


@bp.get("/register")
def register_get():
    if g.company is None or not g.company.self_registration:
        abort(404)
    return render_template("auth/register.html")


@bp.post("/register")
def register_post():
    company = g.company
    if company is None or not company.self_registration:
        abort(404)
    s = db_session()
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    if "@" not in email:
        flash("A valid email address is required.", "danger")
        return redirect(url_for("auth.register_get"))
    if len(password) < _MIN_PASSWORD_LENGTH:
        flash(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.", "danger")
        return redirect(url_for("auth.register_get"))
    if find_user(s, company, email) is not None:
        flash("An account with that email already exists.", "danger")
        return redirect(url_for("auth.register_get"))

    now = datetime.utcnow()
    user = User(
        owner_id=company.id,
        email=email,
        first_name=(request.form.get("first_name") or "").strip() or None,
        last_name=(request.form.get("last_name") or "").strip() or None,
        password_hash=generate_password_hash(password),
        is_active=True,
        created=now,
        modified=now,
    )
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="user.register", entity_type="User", entity_id=str(user.id))
    _complete_login(s, user, method="register")
    flash("Account created.", "success")
    return redirect(url_for("routes.index"))


def _reset_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="password-reset")


def make_password_reset_token(user: User) -> str:
    # Bind the token to the current hash so it stops working once used.
    return _reset_serializer().dumps({"user_id": user.id, "h": user.password_hash[-12:]})


@bp.get("/forgot-password")
def forgot_password_get():
    if g.company is None or not g.company.email_password_reset:
        abort(404)
    return render_template("auth/forgot_password.html")


@bp.post("/forgot-password")
def forgot_password_post():
    company = g.company
    if company is None or not company.email_password_reset:
        abort(404)
    s = db_session()
    email = (request.form.get("email") or "").strip().lower()
    user = find_user(s, company, email)
    if user is not None and user.is_active:
        token = make_password_reset_token(user)
        link = url_for("auth.reset_password_get", token=token, _external=True)
        # TODO: deliver through the company's SMTP relay once mail settings exist per company.
        current_app.logger.info("Password reset link for user_id=%s: %s", user.id, link)
        record_event(s, actor=user, action="auth.password_reset_requested", entity_type="User", entity_id=str(user.id))
        s.commit()
    flash("If the address is registered, a password reset link has been sent.", "info")
    return redirect(url_for("auth.login_get"))


def _user_from_reset_token(s: Session, token: str) -> User | None:
    try:
        data = _reset_serializer().loads(token, max_age=current_app.config.get("PASSWORD_RESET_MAX_AGE", 3600))
    except (BadSignature, SignatureExpired):
        return None
    user = s.get(User, int(data.get("user_id") or 0))
    if user is None or user.password_hash[-12:] != data.get("h"):
        return None
    if g.company is None or user.owner_id != g.company.id:
        return None
    return user


@bp.get("/reset-password/<token>")
def reset_password_get(token: str):
    s = db_session()
    if _user_from_reset_token(s, token) is None:
        flash("Password reset link is invalid or expired.", "danger")
        return redirect(url_for("auth.login_get"))
    return render_template("auth/reset_password.html", token=token)


@bp.post("/reset-password/<token>")
def reset_password_post(token: str):
    s = db_session()
    user = _user_from_reset_token(s, token)
    if user is None:
        flash("Password reset link is invalid or expired.", "danger")
        return redirect(url_for("auth.login_get"))
    password = request.form.get("password") or ""
    if len(password) < _MIN_PASSWORD_LENGTH:
        flash(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.", "danger")
        return redirect(url_for("auth.reset_password_get", token=token))
    user.password_hash = generate_password_hash(password)
    user.modified = datetime.utcnow()
    record_event(s, actor=user, action="auth.password_reset", entity_type="User", entity_id=str(user.id))
    s.commit()
    flash("Password changed. Please log in.", "success")
    return redirect(url_for("auth.login_get"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))
