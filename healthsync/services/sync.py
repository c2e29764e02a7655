"""Sync orchestration - one pull-then-push cycle between local store and server."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from healthsync.schemas.sync import PullRequest, PushRequest
from healthsync.services.local_store import LocalStore, OutboxEntry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


@dataclass
class SyncResult:
    """Counts for one sync cycle."""
    pulled: int = 0
    pushed: int = 0
    accepted: int = 0
    conflicts: int = 0
    cursor: Optional[str] = None
    completed: bool = True

    def counts(self) -> dict[str, int]:
        data = asdict(self)
        return {k: data[k] for k in ("pulled", "pushed", "accepted", "conflicts")}


class SyncClient:
    """
    Runs sync cycles for one device.

    ``remote`` is anything with async ``pull(PullRequest)`` and
    ``push(PushRequest)`` methods, normally a RemoteClient.
    """

    def __init__(
        self,
        store: LocalStore,
        remote,
        pull_limit: int = DEFAULT_BATCH_SIZE,
        push_batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.store = store
        self.remote = remote
        self.pull_limit = pull_limit
        self.push_batch_size = push_batch_size

    @staticmethod
    def _stop_requested(stop_event: Optional[asyncio.Event], result: SyncResult, phase: str) -> bool:
        if stop_event is not None and stop_event.is_set():
            logger.info(f"Sync stopped before {phase}")
            result.completed = False
            return True
        return False

    async def pull_phase(self, result: SyncResult, stop_event: Optional[asyncio.Event] = None) -> None:
        """Pull pages from the stored cursor until the server has nothing more."""
        cursor = await self.store.get_cursor()
        has_more = True

        while has_more:
            if self._stop_requested(stop_event, result, "pull"):
                break

            page = await self.remote.pull(PullRequest(cursor=cursor, limit=self.pull_limit))
            await self.store.apply_changes(page.changes)
            result.pulled += len(page.changes)

            # Persist after every page so an interrupted cycle resumes here
            cursor = await self.store.advance_cursor(page.cursor)
            has_more = page.has_more and bool(page.changes)

        result.cursor = cursor

    async def _push_batch(self, batch: list[OutboxEntry], result: SyncResult) -> None:
        response = await self.remote.push(PushRequest(changes=[entry.change for entry in batch]))
        result.pushed += len(batch)

        up_to_sequence = batch[-1].sequence_id
        tables_by_id = {entry.change.id: entry.change.table for entry in batch}

        if response.accepted:
            await self.store.clear_outbox(response.accepted, up_to_sequence=up_to_sequence)
            result.accepted += len(response.accepted)

        # Server wins: take its row and drop our pending entries for it
        for conflict in response.conflicts:
            logger.info(f"Conflict on {conflict.table or tables_by_id.get(conflict.id)}/{conflict.id}, applying server version")
            await self.store.apply_server_version(conflict, table=tables_by_id.get(conflict.id))
            await self.store.remove_from_outbox(conflict.id, up_to_sequence=up_to_sequence)
            result.conflicts += 1

    async def push_phase(self, result: SyncResult, stop_event: Optional[asyncio.Event] = None) -> None:
        """Push a snapshot of the whole outbox in batches."""
        entries = await self.store.get_outbox()
        if not entries:
            return

        for start in range(0, len(entries), self.push_batch_size):
            if self._stop_requested(stop_event, result, "push"):
                break
            await self._push_batch(entries[start:start + self.push_batch_size], result)

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> SyncResult:
        """
        Run one full sync cycle: pull and apply, then push the outbox.

        Each step is its own local transaction, so re-running after a crash
        or a stop request picks up where the last cycle left off.

        Args:
            stop_event: When set, the cycle returns at the next checkpoint
                with ``completed=False``.
        """
        result = SyncResult()
        await self.pull_phase(result, stop_event)
        if result.completed and not self._stop_requested(stop_event, result, "push"):
            await self.push_phase(result, stop_event)

        logger.info(
            f"Sync cycle {'completed' if result.completed else 'stopped'}: "
            f"pulled={result.pulled} pushed={result.pushed} "
            f"accepted={result.accepted} conflicts={result.conflicts}"
        )
        return result
