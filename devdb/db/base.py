"""Database setup for the provisioning journal."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./devdb.db"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _ensure_sync_driver(url: URL) -> URL:
    """The journal uses a synchronous engine; map async drivers to sync ones."""
    if url.drivername.startswith("postgresql+") and any(
        token in url.drivername for token in ("async", "aiopg")
    ):
        return url.set(drivername="postgresql+psycopg")
    if url.drivername == "sqlite+aiosqlite":
        return url.set(drivername="sqlite")
    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    url = make_url(raw_url or DEFAULT_DATABASE_URL)
    # render_as_string keeps the password; str(url) masks it
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def create_journal_engine(raw_url: Optional[str] = None) -> Engine:
    database_url = get_database_url(raw_url)

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(engine: Engine) -> None:
    """Create journal tables that do not exist yet."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
