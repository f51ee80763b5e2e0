from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import event
from sqlalchemy.orm import Session

from app.ilves.persistence import get_engine, get_sessionmaker

logger = logging.getLogger(__name__)


def _receive_checkout(dbapi_connection, connection_record, connection_proxy) -> None:
    logger.debug("DB connection checkout from pool")


def init_db(app: Flask) -> None:
    # Engines are shared per (unit, category); several apps may bind the same one.
    engine = get_engine(app.config["PERSISTENCE_UNIT"], app.config["PROPERTIES_CATEGORY"])
    if app.config.get("ENV") != "production" and not event.contains(engine, "checkout", _receive_checkout):
        event.listen(engine, "checkout", _receive_checkout)
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = get_sessionmaker(
        app.config["PERSISTENCE_UNIT"], app.config["PROPERTIES_CATEGORY"]
    )


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        s.close()
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
