from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, url_for
from sqlalchemy import text

from app.ilves.audit import record_event
from app.ilves.db import db_session
from app.ilves.models import AuditEvent, User
from app.ilves.modules.customers.models import Customer
from app.ilves.rbac import require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    company = g.company
    status = {
        "env": (current_app.config.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "customers": 0,
        "users": 0,
        "client_certificates": 0,
    }

    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
        status["customers"] = s.query(Customer).filter(Customer.owner_id == company.id).count()
        status["users"] = s.query(User).filter(User.owner_id == company.id).count()
        status["client_certificates"] = (
            s.query(User).filter(User.owner_id == company.id, User.certificate_alias.isnot(None)).count()
        )
    except Exception as e:
        current_app.logger.error("Dashboard status query failed: %s", e)
        status["db_error"] = str(e)

    return render_template("admin/index.html", system_status=status, company=company)


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = getattr(g, "current_user", None)
    role_keys: list[str] = []
    perm_keys: list[str] = []
    if user:
        role_keys = sorted({r.key for r in (user.roles or [])})
        perms = set()
        for r in user.roles or []:
            for p in r.permissions or []:
                perms.add(p.key)
        perm_keys = sorted(perms)
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=perm_keys)


@bp.post("/me")
@require_permission("admin.view")
def me_update():
    """Update the current user's name."""
    s = db_session()
    user = g.current_user
    before = {"first_name": user.first_name, "last_name": user.last_name}
    user.first_name = (request.form.get("first_name") or "").strip() or None
    user.last_name = (request.form.get("last_name") or "").strip() or None
    user.modified = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": {"first_name": user.first_name, "last_name": user.last_name}},
    )
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("admin.me"))


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail of the current company (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent).filter(AuditEvent.company_id == g.company.id)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
