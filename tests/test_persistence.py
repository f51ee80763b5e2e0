import threading
import time
from pathlib import Path

import pytest
from sqlalchemy import inspect

from app.ilves import persistence
from app.ilves.persistence import (
    SiteError,
    diff,
    drop_database_objects,
    get_engine,
    get_sessionmaker,
    remove_engine,
)

MIGRATIONS = Path(__file__).resolve().parents[1] / "migrations"


@pytest.fixture()
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'site.db'}")
    monkeypatch.setenv("OTHER_DATABASE_URL", f"sqlite:///{tmp_path/'other.db'}")
    monkeypatch.delenv("MIGRATIONS_SCRIPT_LOCATION", raising=False)
    return tmp_path


def test_engine_is_shared_per_unit_and_category(database):
    engine = get_engine("ilves", "site")
    assert get_engine("ilves", "site") is engine
    assert get_engine("ilves", "other") is not engine
    assert get_engine("reports", "site") is not engine


def test_remove_engine(database):
    engine = get_engine("ilves", "site")
    remove_engine("ilves", "site")
    assert get_engine("ilves", "site") is not engine
    # Removing an unknown key is a no-op
    remove_engine("ilves", "missing")


def test_engine_is_created_once_under_concurrency(database, monkeypatch):
    created = []
    real_new_engine = persistence.new_engine

    def slow_new_engine(category):
        created.append(category)
        time.sleep(0.05)
        return real_new_engine(category)

    monkeypatch.setattr(persistence, "new_engine", slow_new_engine)

    results = []
    threads = [threading.Thread(target=lambda: results.append(get_engine("ilves", "site"))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert created == ["site"]
    assert len(results) == 8
    assert all(e is results[0] for e in results)


def test_sessionmaker_is_bound_to_shared_engine(database):
    sm = get_sessionmaker("ilves", "site")
    assert sm.kw["bind"] is get_engine("ilves", "site")


def test_migrations_run_on_engine_creation(database, monkeypatch):
    monkeypatch.setenv("MIGRATIONS_SCRIPT_LOCATION", str(MIGRATIONS))
    engine = get_engine("ilves", "site")

    tables = set(inspect(engine).get_table_names())
    assert {"companies", "users", "roles", "permissions", "customers", "postal_addresses", "audit_events"} <= tables
    assert "alembic_version" in tables


def test_failed_migration_raises_site_error(database, monkeypatch):
    monkeypatch.setenv("MIGRATIONS_SCRIPT_LOCATION", str(database / "no-such-migrations"))
    with pytest.raises(SiteError, match="Error updating database."):
        get_engine("ilves", "site")
    # Nothing cached after failure
    assert "ilves-site" not in persistence._engines


def test_diff_of_empty_database_lists_tables(database):
    out = diff("ilves", "site")
    assert "create_table" in out
    assert "customers" in out


def test_drop_database_objects(database, monkeypatch):
    monkeypatch.setenv("MIGRATIONS_SCRIPT_LOCATION", str(MIGRATIONS))
    engine = get_engine("ilves", "site")
    assert inspect(engine).get_table_names()

    drop_database_objects("ilves", "site")

    monkeypatch.delenv("MIGRATIONS_SCRIPT_LOCATION")
    assert inspect(get_engine("ilves", "site")).get_table_names() == []
