import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.config import DATABASE_URL
from src.models import Base

logger = logging.getLogger(__name__)


def get_engine():
    """
    Build the pooled engine for DATABASE_URL

    The cron endpoints and CLI jobs share this pool. Connections are pinged
    before checkout and recycled after an hour.
    """
    if not DATABASE_URL:
        raise ValueError("DATABASE_URL not found in environment variables")

    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        echo=False,  # Set to True for SQL debugging
    )
    return engine


def init_db(engine=None):
    """Initialize the database by creating all tables"""
    if engine is None:
        engine = get_engine()

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized (%d tables)", len(Base.metadata.tables))


_SessionLocal = None


def get_session() -> Session:
    """Get a new database session"""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal()


def get_db():
    """FastAPI dependency yielding a session that is closed after the request"""
    db = get_session()
    try:
        yield db
    finally:
        db.close()
