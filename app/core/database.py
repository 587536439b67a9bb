import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings


def _engine_kwargs(url: str) -> dict:
    # In-memory SQLite (tests, local runs) must share a single connection
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db():
    logging.getLogger(__name__).info("Initializing database and creating tables if needed")
    # Register models on Base.metadata before create_all
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_serializable_db():
    """Session for write paths that check conflicts and insert in one transaction."""
    connection = engine.connect().execution_options(isolation_level="SERIALIZABLE")
    db = SessionLocal(bind=connection)
    try:
        yield db
    finally:
        db.close()
        connection.close()
