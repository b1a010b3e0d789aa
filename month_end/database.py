from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from month_end.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def create_session_factory(url: str = DATABASE_URL) -> tuple[Engine, sessionmaker]:
    """Build an engine + session factory and make sure all tables exist."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args)
    # Import models so they are registered on Base.metadata before create_all
    import month_end.models.db  # noqa: F401
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
