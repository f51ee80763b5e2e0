from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.ilves.audit import record_event
from app.ilves.models import Company, PostalAddress, User
from app.ilves.modules.customers.models import Customer

CUSTOMER_FIELDS = (
    "first_name",
    "last_name",
    "company_name",
    "company_code",
    "email_address",
    "phone_number",
)
ADDRESS_FIELDS = (
    "address_line_1",
    "address_line_2",
    "address_line_3",
    "postal_code",
    "city",
    "country",
)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def _clean(v: Any) -> str | None:
    return (str(v) if v is not None else "").strip() or None


def list_customers(s: Session, company: Company, *, q: str = "", page: int = 1, per_page: int = 50) -> tuple[list[Customer], int]:
    """Customers owned by the company, ordered by company name, last name, first name."""
    query = s.query(Customer).filter(Customer.owner_id == company.id)
    if q:
        like = f"%{q}%"
        query = query.filter(
            (Customer.company_name.ilike(like))
            | (Customer.last_name.ilike(like))
            | (Customer.first_name.ilike(like))
            | (Customer.email_address.ilike(like))
        )
    total = query.count()
    customers = (
        query.order_by(
            Customer.company_name.asc(),
            Customer.last_name.asc(),
            Customer.first_name.asc(),
            Customer.id.asc(),
        )
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return customers, total


def get_customer(s: Session, company: Company, customer_id: int) -> Customer | None:
    return (
        s.query(Customer)
        .filter(Customer.id == customer_id, Customer.owner_id == company.id)
        .one_or_none()
    )


def new_customer(company: Company) -> Customer:
    """Unsaved customer with empty addresses, owned by the company."""
    now = datetime.utcnow()
    return Customer(
        owner=company,
        owner_id=company.id,
        created=now,
        modified=now,
        invoicing_address=PostalAddress(),
        delivery_address=PostalAddress(),
    )


def validate_customer_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not (_clean(payload.get("company_name")) or _clean(payload.get("last_name"))):
        errs.append(ValidationError("company_name", "Company name or last name is required."))
    email = _clean(payload.get("email_address"))
    if email and not _EMAIL_RE.match(email):
        errs.append(ValidationError("email_address", "Email address is not valid."))
    return errs


def _apply_payload(c: Customer, payload: dict[str, Any]) -> None:
    for f in CUSTOMER_FIELDS:
        setattr(c, f, _clean(payload.get(f)))
    if c.invoicing_address is None:
        c.invoicing_address = PostalAddress()
    if c.delivery_address is None:
        c.delivery_address = PostalAddress()
    for prefix, address in (("invoicing_", c.invoicing_address), ("delivery_", c.delivery_address)):
        for f in ADDRESS_FIELDS:
            setattr(address, f, _clean(payload.get(prefix + f)))


def _snapshot(c: Customer) -> dict[str, Any]:
    snap: dict[str, Any] = {f: getattr(c, f) for f in CUSTOMER_FIELDS}
    for prefix, address in (("invoicing_", c.invoicing_address), ("delivery_", c.delivery_address)):
        for f in ADDRESS_FIELDS:
            snap[prefix + f] = getattr(address, f) if address is not None else None
    return snap


def create_customer(s: Session, company: Company, payload: dict[str, Any], *, user: User) -> Customer:
    c = new_customer(company)
    _apply_payload(c, payload)
    s.add(c)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"company_name": c.company_name, "last_name": c.last_name},
    )
    return c


def update_customer(s: Session, c: Customer, payload: dict[str, Any], *, user: User) -> Customer:
    before = _snapshot(c)
    _apply_payload(c, payload)
    after = _snapshot(c)
    fields_changed = [k for k in before if before[k] != after[k]]
    if fields_changed:
        c.modified = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return c


def remove_customer(s: Session, c: Customer, *, user: User) -> None:
    """Delete the customer together with its postal addresses."""
    record_event(
        s,
        actor=user,
        action="customer.delete",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"company_name": c.company_name, "last_name": c.last_name},
    )
    s.delete(c)
