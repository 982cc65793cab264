"""Device-local key/value store backed by the SQL database."""
import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flashdrill.models.models import LocalEntry
from flashdrill.monitoring import local_store_errors

logger = logging.getLogger(__name__)


class LocalStore:
    """Synchronous store that never raises.

    Corrupt or missing values read back as the caller's default and failed
    writes are logged and dropped; the local store is the fallback of
    record, so losing a write is preferred over crashing.
    """

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def get(self, key: str, default: Any = None) -> Any:
        """Get the decoded value stored under a key."""
        try:
            entry = self.db.query(LocalEntry).filter(LocalEntry.key == key).first()
        except SQLAlchemyError as e:
            logger.warning(f"Local read of {key} failed: {e}")
            local_store_errors.labels(operation="get").inc()
            self.db.rollback()
            return default

        if entry is None:
            return default
        try:
            value = json.loads(entry.value)
        except (TypeError, ValueError):
            logger.warning(f"Local value for {key} is not valid JSON, using default")
            return default
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """JSON-encode a value and store it under a key."""
        try:
            raw = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize local value for {key}: {e}")
            local_store_errors.labels(operation="serialize").inc()
            return

        try:
            entry = self.db.query(LocalEntry).filter(LocalEntry.key == key).first()
            if entry is None:
                self.db.add(LocalEntry(key=key, value=raw))
            else:
                entry.value = raw
            self.db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Local write of {key} failed: {e}")
            local_store_errors.labels(operation="set").inc()
            self.db.rollback()

    def delete(self, key: str) -> None:
        """Remove a key if present."""
        try:
            self.db.query(LocalEntry).filter(LocalEntry.key == key).delete()
            self.db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Local delete of {key} failed: {e}")
            local_store_errors.labels(operation="delete").inc()
            self.db.rollback()
