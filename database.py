from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def _in_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite+pysqlite://") or ":memory:" in database_url


def build_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    options: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if _in_memory(database_url):
            # every pooled connection would otherwise get its own empty database
            options["poolclass"] = StaticPool
    eng = create_engine(database_url, connect_args=connect_args, **options)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def build_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass
