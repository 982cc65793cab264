"""Database models for the local store."""
from sqlalchemy import Column, String, Text

from flashdrill.models.base import Base, TimestampMixin


class LocalEntry(Base, TimestampMixin):
    """One key of the device-local key/value store."""

    __tablename__ = "local_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON text
