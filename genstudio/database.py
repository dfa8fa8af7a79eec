"""
Database engine and session factory.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings

Base = declarative_base()


def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared with worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def build_session_factory(engine) -> sessionmaker:
    # Records are handed out after the session closes
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


def init_db(bind=None) -> None:
    """Create tables (in production, use Alembic migrations instead)."""
    from . import models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=bind or engine)
