"""
SQLAlchemy engine and session factory for the reference persistence service.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from progress_core.config import DATABASE_URL

Base = declarative_base()


def create_db_engine(url: str = DATABASE_URL) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions"""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables"""
    from progress_core.infrastructure import orm_models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)


engine = create_db_engine()
SessionLocal = create_session_factory(engine)
