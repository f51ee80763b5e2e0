import pytest

from app.ilves import create_app
from app.ilves.db import session_scope
from app.ilves.models import Base
from app.ilves.persistence import clear_engines
from scripts.init_db import seed

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "pw"


@pytest.fixture(autouse=True)
def _fresh_engines():
    # Engines are process-wide singletons keyed by unit and category.
    clear_engines()
    yield
    clear_engines()


@pytest.fixture()
def site_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("KEY_STORE_PATH", str(tmp_path / "keystore.json"))
    monkeypatch.setenv("KEY_STORE_PASSWORD", "store-secret")
    monkeypatch.setenv("CLIENT_CERTIFICATE_ENTRY_PASSWORD", "entry-secret")
    monkeypatch.setenv("SERVER_CERTIFICATE_SELF_SIGNED_KEY_SIZE", "1024")
    for k in ("MIGRATIONS_SCRIPT_LOCATION", "CLIENT_CERTIFICATE_HEADER"):
        monkeypatch.delenv(k, raising=False)
    return tmp_path


@pytest.fixture()
def app(site_env):
    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email=ADMIN_EMAIL, admin_password=ADMIN_PASSWORD, company_name="Acme", company_host="localhost")

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def csrf_token(client) -> str:
    with client.session_transaction() as sess:
        return sess["csrf_token"]
