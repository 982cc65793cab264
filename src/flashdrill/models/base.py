"""Base model configuration."""
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from flashdrill.config import settings


def _engine_options(url: str) -> dict:
    """In-memory SQLite must share one connection across sessions."""
    if url.startswith("sqlite") and (":memory:" in url or url == "sqlite://"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {}


# Create SQLAlchemy engine
engine = create_engine(
    settings.database.url,
    echo=settings.database.echo,
    **_engine_options(settings.database.url),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base class
Base = declarative_base()


class TimestampMixin:
    """Mixin to add timestamp columns to models."""
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


def init_db() -> None:
    """Initialize database."""
    # Import models so they register with the metadata
    from flashdrill.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)  # Create tables if they don't exist
