"""
Database session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from app.core.config import settings
from app.db.base import Base


def build_engine(url: str = None, echo: bool = None, **kwargs) -> Engine:
    """Create an engine; SQLite URLs get thread-safe connection settings."""
    url = url or settings.DATABASE_URL
    options = {
        "echo": settings.DB_ECHO if echo is None else echo,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        options["pool_recycle"] = 3600
    options.update(kwargs)
    return create_engine(url, **options)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine()

SessionLocal = build_session_factory(engine)


def init_db(bind: Engine = None):
    """Initialize database tables."""
    # Import models so they register on Base.metadata
    import app.models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
