import logging
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from qbank_scoring.core.config import settings

logger = logging.getLogger(__name__)


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO, **kwargs)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create tables if they don't exist. Production deployments use migrations."""
    from qbank_scoring.models.orm import Base
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")
