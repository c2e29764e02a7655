"""Server-side sync handlers: incremental pull and batched push."""

import logging
from typing import Any, Optional

from sqlalchemy import Table, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from healthsync.core.clock import Clock, iso_to_ms, parse_iso, to_iso, utc_now
from healthsync.models.server import SERVER_TABLES
from healthsync.models.synced import SyncedTable, filter_payload
from healthsync.schemas.sync import (
    PullResponse,
    PushResponse,
    SyncChange,
    SyncConflict,
)

logger = logging.getLogger(__name__)

DEFAULT_PULL_LIMIT = 1000

# Columns a client may never overwrite on an existing row
_PROTECTED_ON_UPDATE = {"id", "user_id", "created_at"}


def _change_order(change: SyncChange) -> tuple:
    return (change.timestamp, change.payload["updated_at"], change.table, change.id)


class RemoteSyncService:
    """
    Authoritative side of the sync protocol.

    All statements are scoped by ``user_id``; a row owned by another user is
    simply never matched.
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_change(synced: SyncedTable, row: dict[str, Any]) -> SyncChange:
        return SyncChange(
            table=synced.value,
            id=row["id"],
            operation="delete" if row["deleted_at"] is not None else "update",
            payload=row,
            timestamp=iso_to_ms(row["updated_at"]),
        )

    async def pull(
        self,
        session: AsyncSession,
        user_id: str,
        cursor: str,
        limit: Optional[int] = None,
    ) -> PullResponse:
        """
        Return the user's changes with ``updated_at > cursor``.

        Rows from every synced table are merged into one list ordered by
        updated_at (then table name, then id) and truncated to ``limit``.
        A page never ends partway through rows that share one updated_at:
        the next pull starts strictly after the returned cursor, so the page
        is extended with every remaining row at the boundary value.
        """
        limit = limit or DEFAULT_PULL_LIMIT
        logger.info(f"Pull for user {user_id} from cursor {cursor} (limit {limit})")

        # Stored timestamps all use to_iso's format, so string comparison is chronological
        since = to_iso(parse_iso(cursor))

        changes: list[SyncChange] = []
        for synced, table in SERVER_TABLES.items():
            # limit + 1 per table is enough to know whether the merge overflows
            result = await session.execute(
                select(table)
                .where(table.c.user_id == user_id, table.c.updated_at > since)
                .order_by(table.c.updated_at.asc(), table.c.id.asc())
                .limit(limit + 1)
            )
            for row in result.mappings().all():
                changes.append(self._row_to_change(synced, dict(row)))

        changes.sort(key=_change_order)

        if len(changes) <= limit:
            returned = changes
            has_more = False
        else:
            boundary = changes[limit - 1].payload["updated_at"]
            returned = await self._fill_boundary(
                session,
                user_id,
                boundary,
                [c for c in changes if c.payload["updated_at"] <= boundary],
            )
            has_more = await self._has_changes_after(session, user_id, boundary)

        new_cursor = returned[-1].payload["updated_at"] if returned else cursor

        logger.info(
            f"Pull for user {user_id} returned {len(returned)} changes "
            f"(has_more={has_more}, cursor={new_cursor})"
        )
        return PullResponse(changes=returned, cursor=new_cursor, has_more=has_more)

    async def _fill_boundary(
        self,
        session: AsyncSession,
        user_id: str,
        boundary: str,
        page: list[SyncChange],
    ) -> list[SyncChange]:
        """Add rows at ``boundary`` that the per-table limit cut off."""
        seen = {(c.table, c.id) for c in page}
        for synced, table in SERVER_TABLES.items():
            result = await session.execute(
                select(table).where(table.c.user_id == user_id, table.c.updated_at == boundary)
            )
            for row in result.mappings().all():
                if (synced.value, row["id"]) not in seen:
                    page.append(self._row_to_change(synced, dict(row)))

        page.sort(key=_change_order)
        return page

    @staticmethod
    async def _has_changes_after(session: AsyncSession, user_id: str, boundary: str) -> bool:
        for table in SERVER_TABLES.values():
            result = await session.execute(
                select(table.c.id)
                .where(table.c.user_id == user_id, table.c.updated_at > boundary)
                .limit(1)
            )
            if result.first() is not None:
                return True
        return False

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_row(session: AsyncSession, table: Table, row_id: str, user_id: str) -> Optional[dict[str, Any]]:
        result = await session.execute(
            select(table).where(table.c.id == row_id, table.c.user_id == user_id)
        )
        row = result.mappings().one_or_none()
        return dict(row) if row is not None else None

    @staticmethod
    async def _insert_row(
        session: AsyncSession,
        synced: SyncedTable,
        change: SyncChange,
        user_id: str,
        now_iso: str,
    ) -> None:
        values = filter_payload(synced, change.payload)
        values["id"] = change.id
        values["user_id"] = user_id
        values.setdefault("created_at", now_iso)
        values["updated_at"] = now_iso
        await session.execute(insert(SERVER_TABLES[synced]).values(**values))

    @staticmethod
    async def _update_row(
        session: AsyncSession,
        synced: SyncedTable,
        change: SyncChange,
        user_id: str,
        now_iso: str,
    ) -> None:
        table = SERVER_TABLES[synced]
        values = {
            k: v for k, v in filter_payload(synced, change.payload).items()
            if k not in _PROTECTED_ON_UPDATE
        }
        values["updated_at"] = now_iso
        await session.execute(
            update(table)
            .where(table.c.id == change.id, table.c.user_id == user_id)
            .values(**values)
        )

    async def _apply_push_change(
        self,
        session: AsyncSession,
        user_id: str,
        synced: SyncedTable,
        change: SyncChange,
        now_iso: str,
        written_in_batch: set[tuple[SyncedTable, str]],
    ) -> Optional[SyncConflict]:
        """Apply one pushed change. Returns a conflict instead of applying it when the server row is newer."""
        table = SERVER_TABLES[synced]
        key = (synced, change.id)
        existing = await self._get_row(session, table, change.id, user_id)
        # A row this batch already wrote carries the server's fresh timestamp,
        # not a newer edit from another device
        own_write = key in written_in_batch

        if existing is None:
            if change.operation == "delete":
                # Deleting an unknown row is an idempotent no-op
                return None
            await self._insert_row(session, synced, change, user_id, now_iso)

        elif change.operation == "insert" and not own_write:
            return SyncConflict(id=change.id, table=synced.value, server_version=existing)

        elif not own_write and iso_to_ms(existing["updated_at"]) > change.timestamp:
            return SyncConflict(id=change.id, table=synced.value, server_version=existing)

        elif change.operation == "delete":
            await session.execute(
                update(table)
                .where(table.c.id == change.id, table.c.user_id == user_id)
                .values(deleted_at=now_iso, updated_at=now_iso)
            )

        else:
            await self._update_row(session, synced, change, user_id, now_iso)

        written_in_batch.add(key)
        return None

    async def push(self, session: AsyncSession, user_id: str, changes: list[SyncChange]) -> PushResponse:
        """
        Apply a batch of client changes with newer-wins conflict detection.

        The batch is committed as one transaction and rolled back as a whole
        on any unexpected error. Each change is accepted or turned into a
        conflict on its own:

        - insert: conflict if the row exists, else insert
        - update: insert if missing, conflict if the stored updated_at is
          strictly newer than the change timestamp, else update
        - delete: accepted no-op if missing, same newer-wins check, else
          tombstone the row
        """
        logger.info(f"Push for user {user_id}: {len(changes)} changes")

        accepted: list[str] = []
        conflicts: list[SyncConflict] = []
        now_iso = to_iso(self.clock())
        written_in_batch: set[tuple[SyncedTable, str]] = set()

        try:
            for change in changes:
                synced = SyncedTable.parse(change.table)
                if synced is None:
                    logger.warning(f"Push: skipping change for unknown table {change.table!r} (id={change.id})")
                    continue

                conflict = await self._apply_push_change(
                    session, user_id, synced, change, now_iso, written_in_batch
                )
                if conflict is not None:
                    conflicts.append(conflict)
                else:
                    accepted.append(change.id)

            await session.commit()
        except Exception as e:
            logger.error(f"Push for user {user_id} failed, rolling back batch: {e}")
            await session.rollback()
            raise

        logger.info(f"Push for user {user_id}: {len(accepted)} accepted, {len(conflicts)} conflicts")
        return PushResponse(accepted=accepted, conflicts=conflicts)
