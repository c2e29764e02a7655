# Database models
from healthsync.models.synced import SyncedTable, ColumnSpec, DOMAIN_COLUMNS
from healthsync.models.server import CliSession, SERVER_TABLES
from healthsync.models.local import LocalBase, SyncOutbox, SyncMeta, SyncLog, LOCAL_TABLES

__all__ = [
    "SyncedTable",
    "ColumnSpec",
    "DOMAIN_COLUMNS",
    "CliSession",
    "SERVER_TABLES",
    "LocalBase",
    "SyncOutbox",
    "SyncMeta",
    "SyncLog",
    "LOCAL_TABLES",
]
