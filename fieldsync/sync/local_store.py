"""
Durable local queue of survey records captured while offline.

Records live as one JSON list under a single key of the key-value store.
Every storage failure is logged and degrades to an empty or no-op result so
that data entry is never blocked by a storage glitch.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..models.local_record import LocalRecord, generate_local_id
from .errors import LocalPersistenceError
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalDurableStore:
    """
    Owner of the LocalRecord lifecycle.

    This class provides:
    - Append-only capture of new records, regardless of connectivity
    - Sync status tracking (mark as synced, remove once synced)
    - Failure bookkeeping used to cap replay attempts
    - Age-based pruning of synced records
    """

    STORAGE_KEY = "local_records"
    SYNC_STATUS_KEY = "sync_status"
    RETENTION_DAYS = 7

    def __init__(
        self,
        kv_store: KeyValueStore,
        retention_days: Optional[int] = None,
        max_attempts: Optional[int] = None,
        now: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the store.

        Args:
            kv_store: Persistence substrate
            retention_days: How long synced records are kept
            max_attempts: Failed attempts after which a record counts as exhausted
            now: Wall clock, UTC-aware
        """
        self.kv_store = kv_store
        self.retention_days = self.RETENTION_DAYS if retention_days is None else retention_days
        self.max_attempts = max_attempts
        self._now = now or _utcnow
        self._lock = asyncio.Lock()

    async def _load(self) -> List[LocalRecord]:
        try:
            raw = await self.kv_store.get(self.STORAGE_KEY)
        except LocalPersistenceError as e:
            logger.error(f"Error reading local records: {e}")
            return []
        if not raw:
            return []

        try:
            items = json.loads(raw)
        except ValueError as e:
            logger.error(f"Corrupt local records, ignoring stored value: {e}")
            return []
        if not isinstance(items, list):
            logger.error("Corrupt local records, expected a list")
            return []

        records = []
        for item in items:
            try:
                records.append(LocalRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable local record: {e}")
        return records

    async def _save(self, records: List[LocalRecord]) -> bool:
        try:
            await self.kv_store.set(self.STORAGE_KEY, json.dumps([r.to_dict() for r in records]))
            return True
        except (LocalPersistenceError, TypeError, ValueError) as e:
            logger.error(f"Error saving local records: {e}")
            return False

    async def save_record(self, payload: Any) -> str:
        """
        Append a new unsynced record.

        Args:
            payload: Opaque submission body

        Returns:
            The generated local id
        """
        record = LocalRecord(id=generate_local_id(), payload=payload, created_at=self._now())
        async with self._lock:
            records = await self._load()
            records.append(record)
            await self._save(records)

        logger.info(f"Record saved locally: {record.id}")
        return record.id

    async def get_local_records(self) -> List[LocalRecord]:
        return await self._load()

    async def mark_as_synced(self, record_id: str, server_id: Optional[str] = None) -> None:
        """
        Flag a record as synced.

        Args:
            record_id: Local id of the record
            server_id: Id assigned by the server, when known
        """
        async with self._lock:
            records = await self._load()
            record = next((r for r in records if r.id == record_id), None)
            if record is None:
                return
            record.synced = True
            record.synced_at = self._now()
            if server_id is not None:
                record.server_id = str(server_id)
            await self._save(records)

        suffix = f" (server id: {server_id})" if server_id is not None else ""
        logger.info(f"Record marked as synced: {record_id}{suffix}")

    async def remove_synced_record(self, record_id: str) -> None:
        async with self._lock:
            records = await self._load()
            remaining = [r for r in records if r.id != record_id]
            if len(remaining) != len(records):
                await self._save(remaining)
        logger.info(f"Synced record removed from local storage: {record_id}")

    async def record_failure(self, record_id: str, error: str) -> None:
        """
        Update a record after a failed sync attempt.

        Args:
            record_id: Local id of the record
            error: The error message from the failed attempt
        """
        async with self._lock:
            records = await self._load()
            record = next((r for r in records if r.id == record_id), None)
            if record is None:
                return
            record.attempts += 1
            record.last_error = error
            await self._save(records)

        if self.is_exhausted(record):
            logger.warning(
                f"Record {record_id} reached {record.attempts} failed attempts, "
                f"holding it back from sync: {error}"
            )

    async def reset_attempts(self, record_id: Optional[str] = None) -> int:
        """
        Put exhausted records back in rotation.

        Args:
            record_id: Only reset this record; all records if None

        Returns:
            Number of records reset
        """
        async with self._lock:
            records = await self._load()
            reset = 0
            for record in records:
                if record_id is not None and record.id != record_id:
                    continue
                if record.attempts:
                    record.attempts = 0
                    record.last_error = None
                    reset += 1
            if reset:
                await self._save(records)
        return reset

    def is_exhausted(self, record: LocalRecord) -> bool:
        return (
            not record.synced
            and self.max_attempts is not None
            and record.attempts >= self.max_attempts
        )

    async def get_unsynced_records(self) -> List[LocalRecord]:
        records = await self._load()
        return [r for r in records if not r.synced]

    async def has_unsynced_records(self) -> bool:
        records = await self._load()
        return any(not r.synced for r in records)

    async def get_unsynced_count(self) -> int:
        records = await self._load()
        return sum(1 for r in records if not r.synced)

    async def cleanup_old_records(self) -> int:
        """
        Drop synced records older than the retention window.

        Unsynced records, and synced records without a sync date, are kept.

        Returns:
            Number of records removed
        """
        cutoff = self._now() - timedelta(days=self.retention_days)
        async with self._lock:
            records = await self._load()
            kept = [
                r for r in records
                if not r.synced or r.synced_at is None or r.synced_at > cutoff
            ]
            removed = len(records) - len(kept)
            if removed:
                await self._save(kept)

        if removed:
            logger.info(f"Cleaned up {removed} old synced record(s)")
        return removed

    async def get_local_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the local queue.

        Returns:
            Dictionary with total, synced, unsynced and exhausted counts and
            the oldest/newest creation dates (None when empty)
        """
        records = await self._load()
        created = [r.created_at for r in records]
        return {
            "total": len(records),
            "synced": sum(1 for r in records if r.synced),
            "unsynced": sum(1 for r in records if not r.synced),
            "exhausted": sum(1 for r in records if self.is_exhausted(r)),
            "oldest_record": min(created) if created else None,
            "newest_record": max(created) if created else None,
        }

    async def save_sync_status(self, status: Dict[str, Any]) -> None:
        try:
            await self.kv_store.set(self.SYNC_STATUS_KEY, json.dumps(status, default=str))
        except (LocalPersistenceError, TypeError, ValueError) as e:
            logger.error(f"Error saving sync status: {e}")

    async def get_sync_status(self) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.kv_store.get(self.SYNC_STATUS_KEY)
            return json.loads(raw) if raw else None
        except (LocalPersistenceError, ValueError) as e:
            logger.error(f"Error reading sync status: {e}")
            return None
