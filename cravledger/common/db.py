"""Engine, session factory and column types shared by the ledger and billing models."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from cravledger.common.config import settings


def make_engine(dsn: str) -> Engine:
    """Build an engine for `dsn`.

    SQLite connections are shared between worker threads (the per-account
    lock serializes them), so the same-thread check is switched off there.
    """

    if make_url(dsn).get_backend_name() == "sqlite":
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(dsn, pool_pre_ping=True, pool_size=10, max_overflow=20)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps returned rows readable after the session closes.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for ledger and billing tables."""
