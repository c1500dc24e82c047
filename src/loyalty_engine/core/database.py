"""Engine, session factory and declarative base for the loyalty store."""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

settings = get_settings()

engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a session scoped to one request; the endpoint owns commit/rollback."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
