"""Database bootstrap helpers for the SQL transaction repository."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from paycore.common.config import settings


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_engine(url: str, **kwargs) -> Engine:
    return create_engine(url, pool_pre_ping=True, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


def init_schema(bind: Engine) -> None:
    """Create the payment tables if they do not exist yet."""

    # Model import registers the tables on `Base.metadata`.
    from paycore.services.payments import models  # noqa: F401

    Base.metadata.create_all(bind)


# Single SQLAlchemy engine per process; connects lazily on first use.
engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
