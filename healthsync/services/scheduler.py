"""APScheduler setup for background sync, plus startup and shutdown syncs."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from healthsync.services.errors import SyncAuthError, SyncNetworkError
from healthsync.services.local_config import LocalConfig
from healthsync.services.sync import SyncClient, SyncResult

logger = logging.getLogger(__name__)

SYNC_INTERVAL_SECONDS = 30.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

@dataclass(frozen=True)
class SyncStatus:
    """Sync status for UI display."""
    kind: str  # "idle", "syncing", "synced", "offline", "error"
    last_sync: Optional[datetime] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "SyncStatus":
        return cls("idle")

    @classmethod
    def syncing(cls) -> "SyncStatus":
        return cls("syncing")

    @classmethod
    def synced(cls, last_sync: datetime) -> "SyncStatus":
        return cls("synced", last_sync=last_sync)

    @classmethod
    def offline(cls) -> "SyncStatus":
        return cls("offline")

    @classmethod
    def error(cls, message: str) -> "SyncStatus":
        return cls("error", message=message)

def format_relative_time(when: datetime, now: Optional[datetime] = None) -> str:
    """Format a past time as "just now", "12s ago", "5m ago", "2h ago" or "3d ago"."""
    now = now or datetime.now(timezone.utc)
    seconds = int((now - when).total_seconds())

    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"

def format_sync_status(status: SyncStatus, now: Optional[datetime] = None) -> str:
    """Short status-bar text for a sync status."""
    if status.kind == "idle":
        return ""
    if status.kind == "synced" and status.last_sync is not None:
        return f"synced ({format_relative_time(status.last_sync, now)})"
    return status.kind

class SyncScheduler:
    """
    Drives sync cycles for a long-running host (TUI, ``watch`` command).

    - startup: one cycle in its own task, never blocks the host
    - background: every ``interval_seconds`` via APScheduler
    - shutdown: one cycle bounded by ``shutdown_timeout``

    Every trigger is skipped when no auth token is stored. Errors are logged
    and reflected in ``status``; they never reach the host.
    """

    def __init__(
        self,
        client: SyncClient,
        config: LocalConfig,
        interval_seconds: float = SYNC_INTERVAL_SECONDS,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.config = config
        self.interval_seconds = interval_seconds
        self.shutdown_timeout = shutdown_timeout

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.status = SyncStatus.idle()

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._startup_task: Optional[asyncio.Task] = None
        self._background_task: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[SyncStatus], Any]] = []

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[SyncStatus], Any]) -> Callable[[], None]:
        """Call ``listener`` now and on every status change. Returns an unsubscribe function."""
        self._listeners.append(listener)
        listener(self.status)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_status(self, status: SyncStatus) -> None:
        self.status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _record(self, trigger: str, started_at: datetime, status: str,
                      result: Optional[SyncResult] = None, error: Optional[str] = None) -> None:
        try:
            await self.client.store.record_sync(
                trigger,
                started_at,
                status,
                counts=result.counts() if result else None,
                error_message=error,
            )
        except Exception as e:
            logger.error(f"Failed to record {trigger} sync in log: {e}")

    async def run_once(self, trigger: str) -> Optional[SyncResult]:
        """
        Run one guarded sync cycle.

        Returns the cycle result, or None if the cycle was skipped or failed.
        """
        if not self.config.is_logged_in():
            logger.debug(f"Not logged in, skipping {trigger} sync")
            return None

        if self._lock.locked():
            logger.info(f"Sync already in progress, skipping {trigger} sync")
            return None

        async with self._lock:
            self._set_status(SyncStatus.syncing())
            started_at = self.client.store.clock()

            try:
                result = await self.client.run_cycle(self._stop_event)
            except SyncAuthError as e:
                logger.warning(f"Sync failed ({trigger}): auth: {e}")
                self._set_status(SyncStatus.error(f"auth: {e}"))
                await self._record(trigger, started_at, "failed", error=f"auth: {e}")
                return None
            except SyncNetworkError as e:
                logger.warning(f"Sync failed ({trigger}): network: {e}")
                self._set_status(SyncStatus.offline())
                await self._record(trigger, started_at, "failed", error=f"network: {e}")
                return None
            except Exception as e:
                logger.error(f"Sync failed ({trigger}): {e}")
                self._set_status(SyncStatus.error(str(e)))
                await self._record(trigger, started_at, "failed", error=str(e))
                return None

            self._set_status(SyncStatus.synced(self.client.store.clock()))
            await self._record(trigger, started_at, "success", result=result)
            return result

    async def _background_tick(self) -> None:
        """APScheduler job: one background cycle."""
        self._background_task = asyncio.current_task()
        try:
            await self.run_once("background")
        finally:
            self._background_task = None

    async def run_shutdown_sync(self) -> Optional[SyncResult]:
        """Final best-effort cycle, abandoned after ``shutdown_timeout`` seconds."""
        try:
            return await asyncio.wait_for(self.run_once("shutdown"), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Shutdown sync timed out after {self.shutdown_timeout}s")
            self._set_status(SyncStatus.error("shutdown sync timed out"))
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Kick off the startup sync and the background job. Needs a running event loop."""
        if self.scheduler is not None:
            logger.warning("Scheduler already started")
            return

        self._stop_event.clear()
        self._startup_task = asyncio.create_task(self.run_once("startup"))

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._background_tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id="background_sync",
            name="Background sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started - background sync every {self.interval_seconds}s")

    async def stop(self, final_sync: bool = True) -> None:
        """
        Stop background sync, then run the shutdown sync.

        An in-flight cycle is asked to stop at its next checkpoint and is
        cancelled if it does not finish within ``shutdown_timeout``.
        """
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Scheduler stopped")

        self._stop_event.set()
        pending = [t for t in (self._startup_task, self._background_task) if t is not None and not t.done()]
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=self.shutdown_timeout)
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)
        self._startup_task = None
        self._stop_event.clear()

        if final_sync:
            await self.run_shutdown_sync()

async def run_with_sync_lifecycle(host: Awaitable[Any], scheduler: SyncScheduler) -> Any:
    """
    Run ``host`` with startup, background and shutdown syncs around it.

    When no auth token is stored the host simply runs without sync.
    """
    if not scheduler.config.is_logged_in():
        logger.info("Not logged in, skipping sync lifecycle")
        return await host

    scheduler.start()
    try:
        return await host
    finally:
        await scheduler.stop()
