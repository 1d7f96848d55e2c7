"""Engine, session factory and declarative base shared by both services.

Deployments run on Postgres. The test suite points `POSTGRES_DSN` at
in-memory SQLite, which needs one connection shared across threads.
"""

from sqlalchemy import JSON, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from paysync.common.config import settings


IN_MEMORY_SQLITE = ("sqlite://", "sqlite:///:memory:")


def build_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        options: dict = {"connect_args": {"check_same_thread": False}}
        if dsn in IN_MEMORY_SQLITE:
            options["poolclass"] = StaticPool
        return create_engine(dsn, **options)
    return create_engine(dsn, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    # Handlers keep reading rows after commit and after the session closes.
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.postgres_dsn)
SessionLocal = build_session_factory(engine)

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass
