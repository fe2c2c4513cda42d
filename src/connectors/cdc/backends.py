"""
Storage backends for the singleton resume-token checkpoint record.

Each backend binds a handle obtained from a connection provider to the
collection/table holding the record and exposes three single-operation
primitives: an atomic native upsert, a point read and a delete.

Backends translate driver exceptions into the checkpoint error taxonomy:
``AccessError`` while binding, ``StorageError`` for the operations.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol
import logging

from pymongo.errors import PyMongoError
from sqlalchemy import Column, DateTime, Integer, JSON, String, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base

from src.utils.clock import ensure_utc
from .errors import AccessError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointRecord:
    """The single persisted resume-token checkpoint."""
    key: str
    resume_token: Optional[Dict[str, Any]]
    saved_at: Optional[datetime]
    owner_id: str
    save_attempt: int


class BoundCheckpointCollection(Protocol):
    """Checkpoint collection/table bound to a live handle."""

    def upsert(self, record: CheckpointRecord) -> None: ...

    def find(self, key: str) -> Optional[CheckpointRecord]: ...

    def delete(self, key: str) -> int: ...


class CheckpointBackend(Protocol):
    """Binds a storage handle to the checkpoint collection/table."""

    def bind(self, handle: Any) -> BoundCheckpointCollection: ...


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------

class MongoCheckpointCollection:
    """Checkpoint document in a MongoDB collection, keyed by ``_id``."""

    def __init__(self, collection):
        self.collection = collection

    def upsert(self, record: CheckpointRecord) -> None:
        try:
            self.collection.update_one(
                {"_id": record.key},
                {
                    "$set": {
                        "resume_token": dict(record.resume_token),
                        "saved_at": record.saved_at,
                        "owner_id": record.owner_id,
                        "save_attempt": record.save_attempt,
                    }
                },
                upsert=True
            )
        except PyMongoError as e:
            raise StorageError(f"Failed to upsert checkpoint {record.key}: {e}") from e

    def find(self, key: str) -> Optional[CheckpointRecord]:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to read checkpoint {key}: {e}") from e

        if doc is None:
            return None

        saved_at = doc.get("saved_at")
        return CheckpointRecord(
            key=key,
            resume_token=doc.get("resume_token"),
            saved_at=ensure_utc(saved_at) if isinstance(saved_at, datetime) else None,
            owner_id=doc.get("owner_id", "unknown"),
            save_attempt=doc.get("save_attempt", 0),
        )

    def delete(self, key: str) -> int:
        try:
            result = self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Failed to delete checkpoint {key}: {e}") from e
        return result.deleted_count


class MongoCheckpointBackend:
    """Stores the checkpoint as one document of a metadata collection.

    Example:
        >>> backend = MongoCheckpointBackend("_sync_metadata")
        >>> backend.bind(client["cafe"]).find("change-stream-resume-token")
    """

    def __init__(self, collection_name: str = "_sync_metadata"):
        self.collection_name = collection_name

    def bind(self, database) -> MongoCheckpointCollection:
        """Bind a pymongo ``Database`` handle.

        Raises:
            AccessError: If the collection cannot be obtained
        """
        try:
            collection = database.get_collection(self.collection_name)
        except Exception as e:
            raise AccessError(
                f"Cannot access collection {self.collection_name}: {e}"
            ) from e
        return MongoCheckpointCollection(collection)


# ---------------------------------------------------------------------------
# SQL (SQLAlchemy)
# ---------------------------------------------------------------------------

Base = declarative_base()


class ResumeTokenCheckpoint(Base):
    """
    Resume-token checkpoint row.

    Stores:
    - key: Fixed singleton key
    - resume_token: Change stream resume token (JSON)
    - saved_at: Time of the last successful write
    - owner_id: Consumer instance that wrote the row
    - save_attempt: Attempt number that succeeded
    """
    __tablename__ = "cdc_resume_checkpoints"

    key = Column(String(255), primary_key=True)
    resume_token = Column(JSON, nullable=False)
    saved_at = Column(DateTime(timezone=True), nullable=False)
    owner_id = Column(String(255), nullable=False)
    save_attempt = Column(Integer, nullable=False)


_UPSERT_BUILDERS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class SqlCheckpointTable:
    """Checkpoint row in a SQL table, keyed by primary key."""

    table = ResumeTokenCheckpoint.__table__

    def __init__(self, engine: Engine):
        self.engine = engine

    def upsert(self, record: CheckpointRecord) -> None:
        builder = _UPSERT_BUILDERS.get(self.engine.dialect.name)
        if builder is None:
            raise StorageError(
                f"Dialect {self.engine.dialect.name} has no native upsert support"
            )

        values = {
            "key": record.key,
            "resume_token": dict(record.resume_token),
            "saved_at": record.saved_at,
            "owner_id": record.owner_id,
            "save_attempt": record.save_attempt,
        }
        statement = builder(self.table).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=[self.table.c.key],
            set_={name: statement.excluded[name] for name in values if name != "key"}
        )

        try:
            with self.engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to upsert checkpoint {record.key}: {e}") from e

    def find(self, key: str) -> Optional[CheckpointRecord]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.table).where(self.table.c.key == key)
                ).mappings().first()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read checkpoint {key}: {e}") from e

        if row is None:
            return None

        return CheckpointRecord(
            key=row["key"],
            resume_token=row["resume_token"],
            saved_at=ensure_utc(row["saved_at"]) if row["saved_at"] else None,
            owner_id=row["owner_id"],
            save_attempt=row["save_attempt"],
        )

    def delete(self, key: str) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(self.table).where(self.table.c.key == key))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete checkpoint {key}: {e}") from e
        return result.rowcount


class SqlCheckpointBackend:
    """Stores the checkpoint as one row of ``cdc_resume_checkpoints``.

    The table is created on bind when missing, so a rebuilt engine or a
    recreated database gets it back.
    """

    def bind(self, engine: Engine) -> SqlCheckpointTable:
        """Bind a SQLAlchemy ``Engine`` handle.

        Raises:
            AccessError: If the table cannot be created or reached
        """
        try:
            # checkfirst: existing tables are left alone
            Base.metadata.create_all(engine, tables=[ResumeTokenCheckpoint.__table__])
        except SQLAlchemyError as e:
            raise AccessError(f"Cannot access checkpoint table: {e}") from e
        return SqlCheckpointTable(engine)
