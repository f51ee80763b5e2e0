from __future__ import annotations

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, url_for

from app.ilves.db import db_session
from app.ilves.models import Company, User
from app.ilves.modules.customers.service import (
    ADDRESS_FIELDS,
    CUSTOMER_FIELDS,
    create_customer,
    get_customer,
    list_customers,
    new_customer,
    remove_customer,
    update_customer,
    validate_customer_payload,
)
from app.ilves.rbac import require_permission

bp = Blueprint("customers", __name__)


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


def _payload_from_form() -> dict[str, str | None]:
    keys = list(CUSTOMER_FIELDS)
    for prefix in ("invoicing_", "delivery_"):
        keys.extend(prefix + f for f in ADDRESS_FIELDS)
    return {k: request.form.get(k) for k in keys}


@bp.get("/customers")
@require_permission("customers.view")
def customers_list():
    s = db_session()
    q = (request.args.get("q") or "").strip()
    try:
        page = max(int(request.args.get("page") or "1"), 1)
    except ValueError:
        page = 1
    per_page = 50
    customers, total = list_customers(s, _current_company(), q=q, page=page, per_page=per_page)
    return render_template(
        "admin/customers/list.html",
        customers=customers,
        q=q,
        page=page,
        total=total,
        has_prev=page > 1,
        has_next=page * per_page < total,
    )


@bp.get("/customers/new")
@require_permission("customers.create")
def customers_new_get():
    return render_template("admin/customers/detail.html", customer=new_customer(_current_company()), is_new=True)


@bp.post("/customers/new")
@require_permission("customers.create")
def customers_new_post():
    s = db_session()
    payload = _payload_from_form()
    errs = validate_customer_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("customers.customers_new_get"))
    try:
        c = create_customer(s, _current_company(), payload, user=_current_user())
        s.commit()
        flash("Customer saved.", "success")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    except Exception as e:
        s.rollback()
        current_app.logger.exception("Customer create failed")
        flash(str(e), "danger")
        return redirect(url_for("customers.customers_new_get"))


@bp.get("/customers/<int:customer_id>")
@require_permission("customers.view")
def customer_detail(customer_id: int):
    s = db_session()
    c = get_customer(s, _current_company(), customer_id)
    if not c:
        flash("Customer not found.", "danger")
        return redirect(url_for("customers.customers_list"))
    return render_template("admin/customers/detail.html", customer=c, is_new=False)


@bp.post("/customers/<int:customer_id>")
@require_permission("customers.edit")
def customer_update_post(customer_id: int):
    s = db_session()
    c = get_customer(s, _current_company(), customer_id)
    if not c:
        flash("Customer not found.", "danger")
        return redirect(url_for("customers.customers_list"))

    payload = _payload_from_form()
    errs = validate_customer_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    try:
        update_customer(s, c, payload, user=_current_user())
        s.commit()
        flash("Customer updated.", "success")
    except Exception as e:
        s.rollback()
        current_app.logger.exception("Customer update failed (customer_id=%s)", customer_id)
        flash(str(e), "danger")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/delete")
@require_permission("customers.delete")
def customer_delete(customer_id: int):
    s = db_session()
    c = get_customer(s, _current_company(), customer_id)
    if not c:
        flash("Customer not found.", "danger")
        return redirect(url_for("customers.customers_list"))
    try:
        remove_customer(s, c, user=_current_user())
        s.commit()
        flash("Customer removed.", "success")
    except Exception as e:
        s.rollback()
        current_app.logger.exception("Customer delete failed (customer_id=%s)", customer_id)
        flash(str(e), "danger")
    return redirect(url_for("customers.customers_list"))
