"""Device-local models: replica tables, outbox, metadata and sync log."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base

from healthsync.models.synced import build_synced_tables

# The local store is its own SQLite file, so it gets its own metadata
LocalBase = declarative_base()


class SyncOutbox(LocalBase):
    """Pending local mutations awaiting upload, in write order."""

    __tablename__ = "sync_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)  # sequence number
    table_name = Column(String, nullable=False)
    row_id = Column(String, nullable=False, index=True)
    operation = Column(String, nullable=False)  # "insert", "update", "delete"
    payload = Column(Text, nullable=False)  # JSON
    timestamp = Column(Integer, nullable=False)  # epoch ms
    created_at = Column(String, nullable=False)

    __table_args__ = {"sqlite_autoincrement": True}


class SyncMeta(LocalBase):
    """Key/value sync state (``last_sync_cursor``)."""

    __tablename__ = "sync_meta"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class SyncLog(LocalBase):
    """Log of sync cycles run on this device."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trigger = Column(String, nullable=False)  # "manual", "startup", "background", "shutdown"
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)  # "success", "failed"
    pulled = Column(Integer, nullable=False, default=0)
    pushed = Column(Integer, nullable=False, default=0)
    accepted = Column(Integer, nullable=False, default=0)
    conflicts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)


LOCAL_TABLES = build_synced_tables(LocalBase.metadata, server=False)
