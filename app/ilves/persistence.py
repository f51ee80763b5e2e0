"""
Engine factories per (persistence unit, properties category).

One engine is built per key and shared by every caller; the first build of a
key also brings the database schema to the Alembic head revision when the
category configures a migrations script location.
"""

from __future__ import annotations

import logging
import threading

from alembic import command
from alembic.autogenerate import produce_migrations, render_python_code
from alembic.config import Config
from alembic.migration import MigrationContext
from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.ilves.config import get_property

logger = logging.getLogger(__name__)

_engines: dict[str, Engine] = {}
_engines_lock = threading.Lock()


class SiteError(RuntimeError):
    pass


def _engine_key(persistence_unit: str, properties_category: str) -> str:
    return f"{persistence_unit}-{properties_category}"


def get_engine(persistence_unit: str, properties_category: str) -> Engine:
    """
    Singleton engine for the given persistence unit and properties category.
    """
    key = _engine_key(persistence_unit, properties_category)
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            engine = new_engine(properties_category)
            try:
                migrate(engine, properties_category)
            except Exception as e:
                engine.dispose()
                raise SiteError("Error updating database.") from e
            _engines[key] = engine
            logger.info("Created engine %s (%s)", key, engine.url.render_as_string(hide_password=True))
        return engine


def remove_engine(persistence_unit: str, properties_category: str) -> None:
    """Forget the cached engine, e.g. after a database failure."""
    key = _engine_key(persistence_unit, properties_category)
    with _engines_lock:
        engine = _engines.pop(key, None)
    if engine is not None:
        engine.dispose()


def clear_engines() -> None:
    with _engines_lock:
        engines = list(_engines.values())
        _engines.clear()
    for engine in engines:
        engine.dispose()


def get_sessionmaker(persistence_unit: str, properties_category: str) -> sessionmaker:
    return sessionmaker(
        bind=get_engine(persistence_unit, properties_category),
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def new_engine(properties_category: str) -> Engine:
    db_url = get_property(properties_category, "database-url")
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    return create_engine(db_url, **engine_kwargs)


def _alembic_config(script_location: str) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", script_location)
    return cfg


def migrate(engine: Engine, properties_category: str) -> None:
    script_location = get_property(properties_category, "migrations-script-location")
    if not script_location:
        return
    cfg = _alembic_config(script_location)
    with engine.begin() as connection:
        cfg.attributes["connection"] = connection
        command.upgrade(cfg, "head")
    logger.info("Database migrated to head (%s)", script_location)


def diff(persistence_unit: str, properties_category: str) -> str:
    """
    Compare the live schema with the ORM model.
    Returns the pending Alembic operations as Python source, or "" when in sync.
    """
    from app.ilves.models import Base

    try:
        engine = get_engine(persistence_unit, properties_category)
        with engine.connect() as connection:
            mc = MigrationContext.configure(connection, opts={"compare_type": True})
            script = produce_migrations(mc, Base.metadata)
        if script.upgrade_ops.is_empty():
            return ""
        return render_python_code(script.upgrade_ops)
    except SiteError:
        raise
    except Exception as e:
        raise SiteError("Error diffing migrations and ORM schemas.") from e


def drop_database_objects(persistence_unit: str, properties_category: str) -> None:
    """Drop every table in the database of the given key, including alembic_version."""
    try:
        engine = new_engine(properties_category)
        try:
            md = MetaData()
            md.reflect(bind=engine)
            md.drop_all(bind=engine)
        finally:
            engine.dispose()
    except Exception as e:
        raise SiteError("Error dropping database objects.") from e
    remove_engine(persistence_unit, properties_category)
