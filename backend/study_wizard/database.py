"""
Database Engine & Session Management
SQLAlchemy setup with dependency injection for FastAPI.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool

from study_wizard.config import get_settings

settings = get_settings()

Base = declarative_base()


def make_engine(url: str, echo: bool = False):
    """Build an engine; in-memory SQLite shares one connection across sessions."""
    if url.startswith("sqlite"):
        if ":memory:" in url:
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        # Ensure data directory exists
        db_path = url.replace("sqlite:///", "")
        if os.path.dirname(db_path):
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
        return create_engine(
            url,
            connect_args={"check_same_thread": False},  # Required for SQLite
            echo=echo,
        )
    return create_engine(url, echo=echo)


engine = make_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables. Called once at application startup."""
    from study_wizard.models import wizard_session as _wizard_session_model  # noqa: F401
    from study_wizard.models import study as _study_model                    # noqa: F401
    from study_wizard.models import audit as _audit_model                    # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


__all__ = ["Base", "Session", "SessionLocal", "engine", "get_db", "init_db", "make_engine"]
