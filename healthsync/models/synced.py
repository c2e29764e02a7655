"""Registry of the domain tables that participate in sync.

Every synced table shares ``id``, ``user_id``, ``created_at``, ``updated_at``
and ``deleted_at``; the domain columns differ per table. All SQL touching a
synced table is generated from this registry, so a column name that is not
listed here can never reach a statement.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, Text


class SyncedTable(str, Enum):
    """Closed set of tables that are replicated between devices and server."""

    WEIGHT_LOGS = "weight_logs"
    INJECTION_LOGS = "injection_logs"
    GLP1_INVENTORY = "glp1_inventory"
    INJECTION_SCHEDULES = "injection_schedules"
    SCHEDULE_PHASES = "schedule_phases"
    USER_GOALS = "user_goals"
    USER_SETTINGS = "user_settings"

    @classmethod
    def parse(cls, name: str) -> Optional["SyncedTable"]:
        """Return the member for ``name``, or None for an unknown table."""
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class ColumnSpec:
    """Typed descriptor for one domain column."""

    name: str
    type_: Any
    required: bool = False
    default: Any = None


SYNC_COLUMNS = ("id", "user_id", "created_at", "updated_at", "deleted_at")

DOMAIN_COLUMNS: dict[SyncedTable, tuple[ColumnSpec, ...]] = {
    SyncedTable.WEIGHT_LOGS: (
        ColumnSpec("datetime", String, required=True),
        ColumnSpec("weight", Float, required=True),
        ColumnSpec("notes", Text),
    ),
    SyncedTable.INJECTION_LOGS: (
        ColumnSpec("datetime", String, required=True),
        ColumnSpec("drug", String, required=True),
        ColumnSpec("source", String),
        ColumnSpec("dosage", String, required=True),
        ColumnSpec("injection_site", String),
        ColumnSpec("notes", Text),
        ColumnSpec("schedule_id", String),
    ),
    SyncedTable.GLP1_INVENTORY: (
        ColumnSpec("drug", String, required=True),
        ColumnSpec("source", String, required=True),
        ColumnSpec("form", String, required=True),
        ColumnSpec("total_amount", String, required=True),
        ColumnSpec("status", String, required=True),
        ColumnSpec("beyond_use_date", String),
    ),
    SyncedTable.INJECTION_SCHEDULES: (
        ColumnSpec("name", String, required=True),
        ColumnSpec("drug", String, required=True),
        ColumnSpec("source", String),
        ColumnSpec("frequency", String, required=True),
        ColumnSpec("start_date", String, required=True),
        ColumnSpec("is_active", Integer, required=True, default=1),
        ColumnSpec("notes", Text),
    ),
    SyncedTable.SCHEDULE_PHASES: (
        ColumnSpec("schedule_id", String, required=True),
        ColumnSpec("order", Integer, required=True),
        ColumnSpec("duration_days", Integer),
        ColumnSpec("dosage", String, required=True),
    ),
    SyncedTable.USER_GOALS: (
        ColumnSpec("goal_weight", Float, required=True),
        ColumnSpec("starting_weight", Float, required=True),
        ColumnSpec("starting_date", String, required=True),
        ColumnSpec("target_date", String),
        ColumnSpec("notes", Text),
        ColumnSpec("is_active", Integer, required=True, default=1),
        ColumnSpec("completed_at", String),
    ),
    SyncedTable.USER_SETTINGS: (
        ColumnSpec("weight_unit", String, required=True, default="lbs"),
        ColumnSpec("reminders_enabled", Integer, required=True, default=1),
    ),
}


def column_names(table: SyncedTable) -> tuple[str, ...]:
    """All column names of a synced table, shared columns first."""
    return SYNC_COLUMNS + tuple(spec.name for spec in DOMAIN_COLUMNS[table])


def filter_payload(table: SyncedTable, payload: dict[str, Any]) -> dict[str, Any]:
    """Keep only the payload keys that are real columns of ``table``."""
    allowed = set(column_names(table))
    return {k: v for k, v in payload.items() if k in allowed}


def build_synced_tables(metadata: MetaData, server: bool) -> dict[SyncedTable, Table]:
    """
    Declare every synced table on ``metadata``.

    Args:
        metadata: Target metadata (server Base or the local store's own).
        server: Server tables are keyed by (user_id, id) and enforce the
            domain NOT NULL constraints. Local replicas key on id alone and
            accept partial rows.
    """
    tables = {}
    for synced in SyncedTable:
        columns = [
            Column("id", String, primary_key=True),
            Column("user_id", String, primary_key=server, nullable=not server),
            Column("created_at", String, nullable=False),
            Column("updated_at", String, nullable=False),
            Column("deleted_at", String, nullable=True),
        ]
        for spec in DOMAIN_COLUMNS[synced]:
            columns.append(Column(
                spec.name,
                spec.type_,
                nullable=not (server and spec.required),
                default=spec.default,
            ))
        name = synced.value
        tables[synced] = Table(
            name,
            metadata,
            *columns,
            Index(f"idx_{name}_user_updated", "user_id", "updated_at"),
        )
    return tables
