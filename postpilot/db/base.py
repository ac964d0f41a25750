from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from postpilot.config import settings

DATABASE_URL = settings.database_url  # default: sqlite:///./postpilot.db


def make_engine(url: str) -> Engine:
    """Engine for ``url``; in-memory SQLite shares one connection so every session sees the same tables."""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    options = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return create_engine(url, **options)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
