"""Server-side models: synced tables plus CLI sessions used to scope requests."""

from datetime import datetime
from sqlalchemy import Column, DateTime, String

from healthsync.core.database import Base
from healthsync.models.synced import build_synced_tables


class CliSession(Base):
    """Bearer token issued to a CLI/TUI device by the auth service."""

    __tablename__ = "cli_sessions"

    id = Column(String, primary_key=True)
    token = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, default="cli")
    device_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)


# Synced tables on the server are keyed by (user_id, id)
SERVER_TABLES = build_synced_tables(Base.metadata, server=True)
