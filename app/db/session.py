import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy drive transactions on pysqlite connections.

    The stdlib driver otherwise issues its own BEGIN/COMMIT, which breaks
    SAVEPOINT based per-row isolation. Foreign keys are off by default in
    SQLite and are switched on for every new connection.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url`` with dialect specific tweaks applied."""
    url = make_url(database_url)
    engine = create_engine(database_url, pool_pre_ping=url.get_backend_name() != "sqlite")
    if url.get_backend_name() == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_db_engine(settings.database_url)
        try:
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            masked = make_url(settings.database_url).render_as_string(hide_password=True)
            logger.warning(f"Could not connect to database {masked}: {e}")
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        SessionLocal = build_session_factory(get_engine())
    return SessionLocal


def get_db():
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine = None) -> None:
    """Create every table declared on ``Base`` that does not exist yet."""
    from app.db import models  # noqa: F401  (registers the mapped classes)

    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%d tables)", len(Base.metadata.tables))
