"""Engine and session factory shared by all services."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from tutordesk.common.config import settings


class Base(DeclarativeBase):
    """Declarative base for every tutordesk table."""

    pass


def make_engine(dsn: str) -> Engine:
    """Postgres in deployments; SQLite (in-memory included) for local runs and tests."""

    if dsn.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if dsn in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(dsn, **kwargs)
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # services read rows after commit, so attributes must not expire
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)
