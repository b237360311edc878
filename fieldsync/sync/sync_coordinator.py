"""
Synchronization of locally queued records with the remote service.

The coordinator replays unsynced records through the request orchestrator
when the device comes back online, on a periodic tick, or on demand. Passes
never overlap; a trigger that arrives during a pass is dropped.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import quote

from ..config.app_config import SyncConfig
from ..models.local_record import LocalRecord
from .connectivity import ConnectivityObserver
from .errors import (
    InvalidCredentialsError,
    OfflineError,
    RateLimitedError,
    SessionExpiredError,
    TransientNetworkError,
)
from .local_store import LocalDurableStore
from .request_orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass
class SyncReport:
    """Outcome of one sync pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "attempted": self.attempted,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
        }


SyncObserver = Callable[[SyncReport], Any]


class SyncCoordinator:
    """
    Drains the local record queue through the request orchestrator.

    This class provides:
    - Sync passes on connectivity restore, on a timer, or on demand
    - Mutual exclusion between passes (busy flag, dropped triggers)
    - Strictly sequential replay with per-record failure isolation
    - Observer notification after every pass
    """

    SYNC_INTERVAL = 10.0  # seconds

    # Failures that say nothing about the record itself: the pass stops and
    # the record keeps its attempt count
    PASS_ABORTING_ERRORS = (
        SessionExpiredError,
        InvalidCredentialsError,
        TransientNetworkError,
        RateLimitedError,
    )

    def __init__(
        self,
        store: LocalDurableStore,
        orchestrator: RequestOrchestrator,
        connectivity: ConnectivityObserver,
        records_endpoint: str = "/records",
        campaign_endpoint: str = "/campaigns/{campaign_id}/submissions",
        campaign_field: str = "campaignId",
        interval: Optional[float] = None
    ):
        """
        Initialize the sync coordinator.

        Args:
            store: Local queue of records
            orchestrator: Used for every upload
            connectivity: Online/offline source
            records_endpoint: Fallback collection endpoint
            campaign_endpoint: Endpoint template for campaign submissions
            campaign_field: Payload field holding the campaign association
            interval: Seconds between periodic passes
        """
        self.store = store
        self.orchestrator = orchestrator
        self.connectivity = connectivity
        self.records_endpoint = records_endpoint
        self.campaign_endpoint = campaign_endpoint
        self.campaign_field = campaign_field
        self.interval = interval or self.SYNC_INTERVAL

        self._syncing = False
        self._observers: List[SyncObserver] = []
        self._last_sync: Optional[datetime] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._triggered: Set[asyncio.Future] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        store: LocalDurableStore,
        orchestrator: RequestOrchestrator,
        connectivity: ConnectivityObserver
    ) -> 'SyncCoordinator':
        return cls(
            store=store,
            orchestrator=orchestrator,
            connectivity=connectivity,
            records_endpoint=config.records_endpoint,
            campaign_endpoint=config.campaign_endpoint,
            campaign_field=config.campaign_field,
            interval=config.interval
        )

    @property
    def state(self) -> SyncState:
        return SyncState.SYNCING if self._syncing else SyncState.IDLE

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def last_sync(self) -> Optional[datetime]:
        return self._last_sync

    async def start(self) -> None:
        """Subscribe to connectivity, start the timer and sync right away if online."""
        persisted = await self.store.get_sync_status()
        if persisted and persisted.get("finished_at"):
            try:
                self._last_sync = datetime.fromisoformat(persisted["finished_at"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring unreadable last sync time: {persisted['finished_at']!r}")

        if self._unsubscribe is None:
            self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        await self.connectivity.start()

        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self._periodic_loop())
            logger.debug(f"Periodic sync started (every {self.interval:g}s)")

        if self.connectivity.is_online:
            self.request_sync()

    async def stop(self) -> None:
        """Stop periodic sync and wait for a running pass to finish."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

        if self._triggered:
            await asyncio.gather(*self._triggered, return_exceptions=True)

        await self.connectivity.stop()
        logger.debug("Periodic sync stopped")

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.request_sync()

    def request_sync(self) -> None:
        """Start a pass in the background. Dropped if a pass is already running."""
        task = asyncio.ensure_future(self.sync_local_records())
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.connectivity.is_online or self._syncing:
                continue
            try:
                await self.sync_local_records()
            except Exception as e:
                logger.error(f"Error in periodic sync loop: {e}")

    def endpoint_for(self, payload: Any) -> str:
        """Pick the collection endpoint from the payload's campaign association."""
        campaign_id = payload.get(self.campaign_field) if isinstance(payload, dict) else None
        if campaign_id:
            return self.campaign_endpoint.format(campaign_id=quote(str(campaign_id), safe=''))
        return self.records_endpoint

    async def sync_local_records(self) -> Optional[SyncReport]:
        """
        Run one sync pass if idle and online.

        Returns:
            The pass report, or None when the trigger was dropped
        """
        if self._syncing:
            logger.debug("Sync already in progress, trigger dropped")
            return None
        if not self.connectivity.is_online:
            logger.debug("Offline, sync skipped")
            return None

        self._syncing = True
        report = SyncReport(started_at=datetime.now(timezone.utc))
        logger.info("Starting synchronization of local records...")

        try:
            records = await self.store.get_unsynced_records()
            eligible = [r for r in records if not self.store.is_exhausted(r)]
            report.skipped = len(records) - len(eligible)

            if not eligible:
                logger.info("No records to synchronize")
            else:
                logger.info(f"Synchronizing {len(eligible)} record(s)...")

            for record in eligible:
                report.attempted += 1
                try:
                    await self._sync_single_record(record)
                    report.synced += 1
                    logger.info(f"Record synchronized: {record.id}")
                except self.PASS_ABORTING_ERRORS as e:
                    report.failed += 1
                    report.errors[record.id] = str(e)
                    logger.warning(f"Sync pass stopped at {record.id}: {e}")
                    break
                except Exception as e:
                    report.failed += 1
                    report.errors[record.id] = str(e)
                    logger.error(f"Error synchronizing {record.id}: {e}")
                    await self.store.record_failure(record.id, str(e))
        finally:
            report.finished_at = datetime.now(timezone.utc)
            self._last_sync = report.finished_at
            self._syncing = False

        logger.info(
            f"Synchronization finished: {report.synced} synced, "
            f"{report.failed} failed, {report.skipped} held back"
        )
        await self.store.save_sync_status(report.to_dict())
        await self._notify_observers(report)
        return report

    async def _sync_single_record(self, record: LocalRecord) -> None:
        endpoint = self.endpoint_for(record.payload)
        result = await self.orchestrator.post(
            endpoint,
            {"formData": record.payload},
            skip_cache=True,
            notify_errors=False
        )
        server_id = result.get("id") if isinstance(result, dict) else None

        await self.store.mark_as_synced(record.id, server_id)
        await self.store.remove_synced_record(record.id)

    async def force_sync(self) -> Optional[SyncReport]:
        """
        Run a pass now.

        Raises:
            OfflineError: If there is no connectivity
        """
        if not self.connectivity.is_online:
            raise OfflineError("No internet connection")
        return await self.sync_local_records()

    def on_sync(self, callback: SyncObserver) -> Callable[[], None]:
        """
        Register a callback invoked with the SyncReport after every pass.

        Returns:
            A function that removes the observer
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    async def _notify_observers(self, report: SyncReport) -> None:
        for callback in list(self._observers):
            try:
                result = callback(report)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in sync observer: {e}")

    async def get_sync_status(self) -> Dict[str, Any]:
        return {
            "is_online": self.connectivity.is_online,
            "is_syncing": self._syncing,
            "unsynced_count": await self.store.get_unsynced_count(),
            "last_sync": self._last_sync,
        }

    async def get_sync_stats(self) -> Dict[str, Any]:
        stats = await self.store.get_local_stats()
        total = stats["total"]
        progress = (stats["synced"] / total) * 100 if total > 0 else 100
        return {
            "total": total,
            "synced": stats["synced"],
            "unsynced": stats["unsynced"],
            "sync_progress": round(progress),
        }

    async def cleanup(self) -> int:
        return await self.store.cleanup_old_records()

    def check_connectivity(self) -> bool:
        return self.connectivity.is_online
