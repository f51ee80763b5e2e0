import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ilves.config import DEFAULT_CATEGORY, get_property
from app.ilves.constants import PERMISSIONS
from app.ilves.models import Company, Permission, Role, User


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed(s: Session, *, admin_email: str, admin_password: str, company_name: str, company_host: str) -> User:
    """
    Seed the default company, permissions, admin role and admin user.
    Idempotent; does NOT overwrite an existing admin user's password.
    """
    now = datetime.utcnow()

    company = s.query(Company).filter(Company.host == company_host).one_or_none()
    if not company:
        company = Company(company_name=company_name, host=company_host, created=now, modified=now)
        s.add(company)
        s.flush()

    def ensure_perm(key: str, name: str) -> Permission:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        return p

    perms = [ensure_perm(key, name) for key, name in PERMISSIONS]

    role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
    if not role_admin:
        role_admin = Role(key="admin", name="Administrator")
        s.add(role_admin)
    for p in perms:
        if p not in role_admin.permissions:
            role_admin.permissions.append(p)

    user = s.query(User).filter(User.owner_id == company.id, User.email == admin_email).one_or_none()
    if not user:
        user = User(
            owner_id=company.id,
            email=admin_email,
            password_hash=generate_password_hash(admin_password),
            is_active=True,
            created=now,
            modified=now,
        )
        s.add(user)
    if role_admin not in user.roles:
        user.roles.append(role_admin)
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    company_name = (os.environ.get("COMPANY_NAME") or "Default").strip()
    company_host = (os.environ.get("COMPANY_HOST") or "localhost").strip().lower()

    db_url = (database_url or get_property(DEFAULT_CATEGORY, "database-url")).strip()

    # Direct engine/session so this can run during release without building the app.
    with _session_scope(db_url) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password, company_name=company_name, company_host=company_host)

    print("Initialized database (seed_only).")
    print(f"Company host: {company_host}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
