"""Device-local SQLite store: replica tables, outbox and sync metadata."""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from healthsync.core.clock import Clock, EPOCH_CURSOR, iso_to_ms, to_iso, to_ms, to_naive_utc, utc_now
from healthsync.models.local import LOCAL_TABLES, LocalBase, SyncLog, SyncMeta, SyncOutbox
from healthsync.models.synced import SyncedTable, filter_payload
from healthsync.schemas.sync import SyncChange, SyncConflict
from healthsync.services.errors import StorageCorruptionError

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_sync_cursor"

_OPERATIONS = ("insert", "update", "delete")


@dataclass
class OutboxEntry:
    """A pending change plus its position in the outbox."""
    sequence_id: int
    change: SyncChange
    created_at: str


def _resolve_table(table: SyncedTable | str) -> SyncedTable:
    synced = table if isinstance(table, SyncedTable) else SyncedTable.parse(table)
    if synced is None:
        raise ValueError(f"Not a synced table: {table}")
    return synced


class LocalStore:
    """
    Local persistence for the sync engine.

    Every mutating method runs in its own transaction and holds the write
    lock, so the outbox write path and the apply path never interleave.
    """

    def __init__(self, engine: AsyncEngine, clock: Clock = utc_now):
        self.engine = engine
        self.clock = clock
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_path(cls, db_path: str, echo: bool = False, clock: Clock = utc_now) -> "LocalStore":
        """Open (creating directories as needed) a store backed by a SQLite file."""
        path = os.path.expanduser(db_path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=echo)
        return cls(engine, clock=clock)

    async def init(self) -> None:
        """Create local tables if they do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(LocalBase.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def get_meta(self, key: str) -> Optional[str]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(SyncMeta.value).where(SyncMeta.key == key))
            return result.scalar_one_or_none()

    async def set_meta(self, key: str, value: str) -> None:
        async with self._write_lock:
            async with self.engine.begin() as conn:
                stmt = insert(SyncMeta.__table__).values(key=key, value=value)
                stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={"value": value})
                await conn.execute(stmt)

    async def get_cursor(self) -> str:
        """Stored pull cursor, or the epoch cursor before the first sync."""
        return await self.get_meta(CURSOR_KEY) or EPOCH_CURSOR

    async def advance_cursor(self, cursor: str) -> str:
        """Persist ``cursor`` unless it would move the stored cursor backwards."""
        current = await self.get_cursor()
        if iso_to_ms(cursor) < iso_to_ms(current):
            logger.warning(f"Ignoring cursor {cursor}: older than stored cursor {current}")
            return current
        if cursor != current:
            await self.set_meta(CURSOR_KEY, cursor)
        return cursor

    # ------------------------------------------------------------------
    # Outbox writer
    # ------------------------------------------------------------------

    async def write_with_outbox(
        self,
        table: SyncedTable | str,
        row_id: str,
        operation: str,
        payload: dict[str, Any],
    ) -> SyncChange:
        """
        Apply a domain mutation and queue it for upload in one transaction.

        - insert: inserts the row, stamping created_at (if absent) and updated_at
        - update: updates the given columns and updated_at
        - delete: sets deleted_at and updated_at; the row is kept

        Returns:
            The change that was appended to the outbox.
        """
        synced = _resolve_table(table)
        if operation not in _OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")

        now = self.clock()
        now_iso = to_iso(now)
        timestamp = to_ms(now)
        sa_table = LOCAL_TABLES[synced]

        values = filter_payload(synced, payload)
        values.pop("id", None)

        if operation == "insert":
            values.setdefault("created_at", now_iso)
            values["updated_at"] = now_iso
            stmt = insert(sa_table).values(id=row_id, **values)
            outbox_payload = {"id": row_id, **values}
        elif operation == "update":
            values["updated_at"] = now_iso
            stmt = update(sa_table).where(sa_table.c.id == row_id).values(**values)
            outbox_payload = {"id": row_id, **values}
        else:
            tombstone = {"deleted_at": now_iso, "updated_at": now_iso}
            stmt = update(sa_table).where(sa_table.c.id == row_id).values(**tombstone)
            outbox_payload = {**values, **tombstone}

        change = SyncChange(
            table=synced.value,
            id=row_id,
            operation=operation,
            payload=outbox_payload,
            timestamp=timestamp,
        )

        async with self._write_lock:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
                await conn.execute(insert(SyncOutbox.__table__).values(
                    table_name=change.table,
                    row_id=row_id,
                    operation=operation,
                    payload=json.dumps(outbox_payload),
                    timestamp=timestamp,
                    created_at=now_iso,
                ))

        logger.debug(f"Queued {operation} of {synced.value}/{row_id}")
        return change

    # ------------------------------------------------------------------
    # Outbox reader / clearer
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_outbox_row(row) -> OutboxEntry:
        try:
            payload = json.loads(row.payload)
        except (TypeError, ValueError) as e:
            raise StorageCorruptionError(row.id, f"invalid payload JSON ({e})") from e
        if not isinstance(payload, dict):
            raise StorageCorruptionError(row.id, "payload is not an object")
        if row.operation not in _OPERATIONS:
            raise StorageCorruptionError(row.id, f"unknown operation {row.operation!r}")

        return OutboxEntry(
            sequence_id=row.id,
            change=SyncChange(
                table=row.table_name,
                id=row.row_id,
                operation=row.operation,
                payload=payload,
                timestamp=row.timestamp,
            ),
            created_at=row.created_at,
        )

    async def get_outbox(self, limit: Optional[int] = None) -> list[OutboxEntry]:
        """
        Pending entries in insertion order.

        Entries that cannot be decoded are logged and skipped; they stay in
        the table so they can be inspected.
        """
        stmt = select(SyncOutbox.__table__).order_by(SyncOutbox.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()

        entries = []
        for row in rows:
            try:
                entries.append(self._decode_outbox_row(row))
            except StorageCorruptionError as e:
                logger.error(f"Skipping corrupt outbox entry: {e}")
        return entries

    async def count_outbox(self) -> int:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(func.count()).select_from(SyncOutbox.__table__))
            return result.scalar_one()

    async def clear_outbox(self, ids: Iterable[str], up_to_sequence: Optional[int] = None) -> int:
        """
        Remove outbox entries for the given row ids.

        Args:
            ids: Row ids the server accepted.
            up_to_sequence: If given, only entries with a sequence number at or
                below it are removed, so writes queued after the pushed
                snapshot survive.

        Returns:
            Number of entries removed.
        """
        ids = list(ids)
        if not ids:
            return 0

        stmt = delete(SyncOutbox.__table__).where(SyncOutbox.row_id.in_(ids))
        if up_to_sequence is not None:
            stmt = stmt.where(SyncOutbox.id <= up_to_sequence)

        async with self._write_lock:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        return result.rowcount

    async def remove_from_outbox(self, row_id: str, up_to_sequence: Optional[int] = None) -> int:
        """Remove every pending entry for one row id."""
        return await self.clear_outbox([row_id], up_to_sequence)

    # ------------------------------------------------------------------
    # Applying server state
    # ------------------------------------------------------------------

    async def _upsert(self, conn: AsyncConnection, synced: SyncedTable, row_id: str, values: dict[str, Any]) -> None:
        sa_table = LOCAL_TABLES[synced]
        values = dict(values)
        values.pop("id", None)
        values.setdefault("updated_at", to_iso(self.clock()))

        insert_values = {"id": row_id, "created_at": values["updated_at"], **values}
        stmt = insert(sa_table).values(**insert_values).on_conflict_do_update(
            index_elements=["id"],
            set_=values,
        )
        await conn.execute(stmt)

    async def apply_change(self, change: SyncChange) -> bool:
        """
        Apply one change pulled from the server.

        The server is authoritative here: insert/update upsert the row, delete
        upserts it with its tombstone fields. Returns False if the table is
        unknown and the change was skipped.
        """
        synced = SyncedTable.parse(change.table)
        if synced is None:
            logger.warning(f"Skipping change for unknown table {change.table!r} (id={change.id})")
            return False

        values = filter_payload(synced, change.payload)
        if change.operation == "delete":
            now_iso = to_iso(self.clock())
            values["deleted_at"] = change.payload.get("deleted_at") or now_iso
            values["updated_at"] = change.payload.get("updated_at") or now_iso

        async with self._write_lock:
            async with self.engine.begin() as conn:
                await self._upsert(conn, synced, change.id, values)
        return True

    async def apply_changes(self, changes: Iterable[SyncChange]) -> int:
        """Apply pulled changes in order. Returns how many were applied."""
        applied = 0
        for change in changes:
            if await self.apply_change(change):
                applied += 1
        return applied

    async def apply_server_version(self, conflict: SyncConflict, table: SyncedTable | str | None = None) -> bool:
        """
        Overwrite the local row with the server's version after a conflict.

        The table comes from the conflict itself, or from the change that
        triggered it when the server did not report one.
        """
        table_name = conflict.table or table
        synced = None
        if table_name is not None:
            synced = table_name if isinstance(table_name, SyncedTable) else SyncedTable.parse(table_name)
        if synced is None:
            logger.warning(f"Cannot apply server version for {conflict.id}: unknown table {table_name!r}")
            return False

        values = filter_payload(synced, conflict.server_version)
        async with self._write_lock:
            async with self.engine.begin() as conn:
                await self._upsert(conn, synced, conflict.id, values)
        return True

    async def get_row(self, table: SyncedTable | str, row_id: str) -> Optional[dict[str, Any]]:
        """Read one replica row (tombstoned rows included)."""
        sa_table = LOCAL_TABLES[_resolve_table(table)]
        async with self.engine.connect() as conn:
            result = await conn.execute(select(sa_table).where(sa_table.c.id == row_id))
            row = result.mappings().one_or_none()
        return dict(row) if row is not None else None

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def record_sync(
        self,
        trigger: str,
        started_at: datetime,
        status: str,
        counts: Optional[dict[str, int]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Append a row to the local sync log."""
        counts = counts or {}
        async with self._write_lock:
            async with self.engine.begin() as conn:
                await conn.execute(insert(SyncLog.__table__).values(
                    trigger=trigger,
                    started_at=to_naive_utc(started_at),
                    completed_at=to_naive_utc(self.clock()),
                    status=status,
                    pulled=counts.get("pulled", 0),
                    pushed=counts.get("pushed", 0),
                    accepted=counts.get("accepted", 0),
                    conflicts=counts.get("conflicts", 0),
                    error_message=error_message,
                ))

    async def last_sync(self, status: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Most recent sync log row, optionally filtered by status."""
        stmt = select(SyncLog.__table__).order_by(SyncLog.id.desc()).limit(1)
        if status is not None:
            stmt = stmt.where(SyncLog.status == status)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).mappings().one_or_none()
        return dict(row) if row is not None else None
