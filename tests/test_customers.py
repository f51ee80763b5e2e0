from datetime import datetime

from app.ilves.db import session_scope
from app.ilves.models import AuditEvent, Company, PostalAddress
from app.ilves.modules.customers.models import Customer
from app.ilves.modules.customers.service import list_customers, new_customer, validate_customer_payload

from conftest import csrf_token, login


def _acme(s) -> Company:
    return s.query(Company).filter(Company.host == "localhost").one()


def _add_customer(s, company: Company, **fields) -> Customer:
    c = new_customer(company)
    for k, v in fields.items():
        setattr(c, k, v)
    s.add(c)
    s.flush()
    return c


def test_new_customer_defaults(app):
    with session_scope(app) as s:
        company = _acme(s)
        c = new_customer(company)
        assert c.owner is company
        assert c.created == c.modified
        assert isinstance(c.invoicing_address, PostalAddress)
        assert isinstance(c.delivery_address, PostalAddress)
        assert c.invoicing_address is not c.delivery_address
        s.expunge_all()


def test_validate_customer_payload():
    assert validate_customer_payload({"last_name": "Smith"}) == []
    errs = validate_customer_payload({"first_name": "Ann"})
    assert [e.field for e in errs] == ["company_name"]
    errs = validate_customer_payload({"company_name": "Acme", "email_address": "not-an-email"})
    assert [e.field for e in errs] == ["email_address"]


def test_list_is_ordered_and_scoped(app):
    with session_scope(app) as s:
        acme = _acme(s)
        other = Company(company_name="Other", host="other.example.com")
        s.add(other)
        s.flush()
        _add_customer(s, acme, company_name="Beta", last_name="Zed")
        _add_customer(s, acme, company_name="Alpha", last_name="Young", first_name="B")
        _add_customer(s, acme, company_name="Alpha", last_name="Young", first_name="A")
        _add_customer(s, other, company_name="Aardvark")

    with session_scope(app) as s:
        customers, total = list_customers(s, _acme(s))
        assert total == 3
        assert [(c.company_name, c.first_name) for c in customers] == [("Alpha", "A"), ("Alpha", "B"), ("Beta", None)]

        customers, total = list_customers(s, _acme(s), q="bet")
        assert [c.company_name for c in customers] == ["Beta"]


def test_customers_list_requires_auth(client):
    r = client.get("/admin/customers")
    assert r.status_code == 302


def test_customer_create_and_edit(client, app):
    login(client)
    r = client.post(
        "/admin/customers/new",
        data={
            "csrf_token": csrf_token(client),
            "company_name": "Widgets Oy",
            "last_name": "Virtanen",
            "email_address": "orders@widgets.example",
            "invoicing_city": "Helsinki",
            "delivery_city": "Espoo",
        },
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        c = s.query(Customer).filter(Customer.company_name == "Widgets Oy").one()
        customer_id = c.id
        created = c.created
        assert c.owner_id == _acme(s).id
        assert c.invoicing_address.city == "Helsinki"
        assert c.delivery_address.city == "Espoo"

    r = client.get("/admin/customers")
    assert b"Widgets Oy" in r.data

    r = client.post(
        f"/admin/customers/{customer_id}",
        data={
            "csrf_token": csrf_token(client),
            "company_name": "Widgets Oy",
            "last_name": "Virtanen",
            "phone_number": "+358 40 123 4567",
            "invoicing_city": "Tampere",
        },
    )
    assert r.status_code == 302

    with session_scope(app) as s:
        c = s.get(Customer, customer_id)
        assert c.phone_number == "+358 40 123 4567"
        assert c.invoicing_address.city == "Tampere"
        assert c.delivery_address.city is None
        assert c.modified > created
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.update").count() == 1


def test_customer_create_validation_error(client, app):
    login(client)
    r = client.post(
        "/admin/customers/new",
        data={"csrf_token": csrf_token(client), "first_name": "Nobody"},
        follow_redirects=True,
    )
    assert b"Company name or last name is required." in r.data
    with session_scope(app) as s:
        assert s.query(Customer).count() == 0


def test_customer_remove_deletes_addresses(client, app):
    with session_scope(app) as s:
        c = _add_customer(s, _acme(s), company_name="Gone Ltd", created=datetime(2020, 1, 1), modified=datetime(2020, 1, 1))
        customer_id = c.id

    login(client)
    r = client.post(f"/admin/customers/{customer_id}/delete", data={"csrf_token": csrf_token(client)})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/customers")

    with session_scope(app) as s:
        assert s.get(Customer, customer_id) is None
        assert s.query(PostalAddress).count() == 0
        assert s.query(AuditEvent).filter(AuditEvent.action == "customer.delete").count() == 1


def test_customer_of_other_company_is_not_visible(client, app):
    with session_scope(app) as s:
        other = Company(company_name="Other", host="other.example.com")
        s.add(other)
        s.flush()
        customer_id = _add_customer(s, other, company_name="Secret Corp").id

    login(client)
    r = client.get(f"/admin/customers/{customer_id}", follow_redirects=True)
    assert b"Customer not found." in r.data
    assert b"Secret Corp" not in r.data

    r = client.post(
        f"/admin/customers/{customer_id}/delete",
        data={"csrf_token": csrf_token(client)},
        follow_redirects=True,
    )
    assert b"Customer not found." in r.data
    with session_scope(app) as s:
        assert s.get(Customer, customer_id) is not None
