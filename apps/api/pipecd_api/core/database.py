from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from pipecd_api.core.config import get_settings


class Base(DeclarativeBase):
    pass


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    engine = create_engine(database_url, pool_pre_ping=True)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


_session_factory: sessionmaker[Session] | None = None


def get_session_factory() -> sessionmaker[Session]:
    """Process default session factory, built lazily from settings at startup."""

    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_settings().database_url)
    return _session_factory
