from __future__ import annotations

import io

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.ilves.certificates import CertificateError, export_pkcs12
from app.ilves.db import db_session
from app.ilves.models import Company, Role, User
from app.ilves.modules.users.service import (
    KeyStoreLocation,
    create_user,
    disable_totp,
    discard_certificates,
    enable_totp,
    get_user,
    issue_client_certificate,
    list_users,
    remove_user,
    revoke_client_certificate,
    totp_provisioning_uri,
    update_user,
    validate_user_payload,
)
from app.ilves.rbac import require_permission

bp = Blueprint("users", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _current_company() -> Company:
    c = getattr(g, "company", None)
    if not c:
        raise RuntimeError("No current company")
    return c


def _key_store() -> KeyStoreLocation:
    cfg = current_app.config
    return KeyStoreLocation(
        path=cfg["KEY_STORE_PATH"],
        password=cfg["KEY_STORE_PASSWORD"],
        entry_password=cfg["CLIENT_CERTIFICATE_ENTRY_PASSWORD"],
    )


def _certificates_changed(*aliases: str | None) -> None:
    cache = current_app.extensions.get("client_certificate_cache")
    if cache is not None:
        for alias in aliases:
            if alias:
                cache.invalidate(alias)
    server = current_app.extensions.get("site_server")
    if server is not None:
        server.reload_trusted_certificates()


def _discard_certificates(*aliases: str | None) -> None:
    """Drop key store entries after the user rows no longer refer to them."""
    try:
        discard_certificates(_key_store(), *aliases)
    except CertificateError as e:
        current_app.logger.error("Key store cleanup failed (aliases=%s): %s", [a for a in aliases if a], e)
        flash("An unused certificate could not be removed from the key store.", "warning")


def _payload_from_form() -> dict:
    return {
        "email": request.form.get("email"),
        "first_name": request.form.get("first_name"),
        "last_name": request.form.get("last_name"),
        "password": request.form.get("password"),
        "is_active": request.form.get("is_active") == "on",
        "role_keys": request.form.getlist("role_keys"),
    }


@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    return render_template("admin/users/list.html", users=list_users(s, _current_company()))


@bp.get("/users/new")
@require_permission("users.create")
def users_new_get():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return render_template("admin/users/detail.html", user=None, roles=roles, provisioning_uri=None)


@bp.post("/users/new")
@require_permission("users.create")
def users_new_post():
    s = db_session()
    company = _current_company()
    payload = _payload_from_form()
    errs = validate_user_payload(s, company, payload)
    if errs:
        flash(" ".join(errs), "danger")
        return redirect(url_for("users.users_new_get"))
    try:
        u = create_user(s, company, payload, actor=_current_user())
        s.commit()
        flash("User saved.", "success")
        return redirect(url_for("users.user_detail", user_id=u.id))
    except Exception as e:
        s.rollback()
        current_app.logger.exception("User create failed")
        flash(str(e), "danger")
        return redirect(url_for("users.users_new_get"))


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def user_detail(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    roles = s.query(Role).order_by(Role.name.asc()).all()
    provisioning_uri = totp_provisioning_uri(u) if u.totp_secret else None
    return render_template("admin/users/detail.html", user=u, roles=roles, provisioning_uri=provisioning_uri)


@bp.post("/users/<int:user_id>")
@require_permission("users.edit")
def user_update_post(user_id: int):
    s = db_session()
    company = _current_company()
    u = get_user(s, company, user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    payload = _payload_from_form()
    errs = validate_user_payload(s, company, payload, user=u)
    if errs:
        flash(" ".join(errs), "danger")
        return redirect(url_for("users.user_detail", user_id=u.id))
    try:
        update_user(s, u, payload, actor=_current_user())
        s.commit()
        _certificates_changed(u.certificate_alias)
        flash("User updated.", "success")
    except Exception as e:
        s.rollback()
        current_app.logger.exception("User update failed (user_id=%s)", user_id)
        flash(str(e), "danger")
    return redirect(url_for("users.user_detail", user_id=u.id))


@bp.post("/users/<int:user_id>/delete")
@require_permission("users.delete")
def user_delete(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    try:
        alias = remove_user(s, u, actor=_current_user())
        s.commit()
    except (ValueError, SQLAlchemyError) as e:
        s.rollback()
        current_app.logger.warning("User delete failed (user_id=%s): %s", user_id, e)
        flash(str(e), "danger")
        return redirect(url_for("users.users_list"))
    _certificates_changed(alias)
    _discard_certificates(alias)
    flash("User removed.", "success")
    return redirect(url_for("users.users_list"))


@bp.post("/users/<int:user_id>/totp")
@require_permission("users.edit")
def user_totp_toggle(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    if request.form.get("action") == "disable":
        disable_totp(s, u, actor=_current_user())
        flash("Authenticator removed.", "success")
    else:
        enable_totp(s, u, actor=_current_user())
        flash("Authenticator registered. Scan the provisioning code with the authenticator app.", "success")
    s.commit()
    return redirect(url_for("users.user_detail", user_id=u.id))


@bp.post("/users/<int:user_id>/certificate")
@require_permission("users.certificates")
def user_certificate_issue(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    previous = u.certificate_alias
    alias = None
    try:
        alias = issue_client_certificate(s, u, actor=_current_user(), key_store=_key_store())
        s.commit()
    except (CertificateError, SQLAlchemyError) as e:
        s.rollback()
        current_app.logger.error("Certificate issue failed (user_id=%s): %s", user_id, e)
        flash(str(e), "danger")
        # The new entry was never committed to a user.
        _discard_certificates(alias)
        return redirect(url_for("users.user_detail", user_id=user_id))
    _certificates_changed(previous, alias)
    _discard_certificates(previous)
    flash(f"Client certificate issued: {alias}", "success")
    return redirect(url_for("users.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/certificate/revoke")
@require_permission("users.certificates")
def user_certificate_revoke(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u:
        flash("User not found.", "danger")
        return redirect(url_for("users.users_list"))
    try:
        alias = revoke_client_certificate(s, u, actor=_current_user())
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        current_app.logger.error("Certificate revoke failed (user_id=%s): %s", user_id, e)
        flash(str(e), "danger")
        return redirect(url_for("users.user_detail", user_id=user_id))
    _certificates_changed(alias)
    _discard_certificates(alias)
    flash("Client certificate revoked." if alias else "User has no client certificate.", "success")
    return redirect(url_for("users.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/certificate/download")
@require_permission("users.certificates")
def user_certificate_download(user_id: int):
    s = db_session()
    u = get_user(s, _current_company(), user_id)
    if not u or not u.certificate_alias:
        flash("User has no client certificate.", "danger")
        return redirect(url_for("users.users_list"))
    ks = _key_store()
    try:
        data = export_pkcs12(
            u.certificate_alias,
            ks.path,
            ks.password,
            ks.entry_password,
            request.form.get("export_password") or "",
        )
    except CertificateError as e:
        current_app.logger.error("Certificate export failed (user_id=%s): %s", user_id, e)
        flash(str(e), "danger")
        return redirect(url_for("users.user_detail", user_id=u.id))
    return send_file(
        io.BytesIO(data),
        mimetype="application/x-pkcs12",
        as_attachment=True,
        download_name=f"{u.email}.p12",
    )
