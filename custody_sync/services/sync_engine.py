"""
Sync engine: replays the offline queue against the remote platform

Cycle order is fixed: evidence bags, then custody entries, then photos. Custody
entries and photos created offline reference their bag by its local id, so each
bag that syncs has its server id threaded into the queued dependents before
they are attempted. Records are attempted one at a time; a failure is counted
and the cycle moves on.
"""
import asyncio
import logging
from typing import Any, Awaitable, Optional

from ..core.config import settings
from ..core.correlation import sync_cycle_context
from ..core.errors import OfflineQueueError, RemoteWriteError, SyncEngineError
from ..schemas.drafts import RecordKind, PendingRecord, is_local_bag_id
from ..schemas.sync import SyncResult
from .offline_queue import OfflineQueue, offline_queue
from .remote import RemoteEvidenceApi, remote_api

logger = logging.getLogger(__name__)


class SyncEngine:
    """Drains the offline queue; at most one cycle runs at a time"""

    def __init__(
        self,
        queue: OfflineQueue,
        remote: RemoteEvidenceApi,
        call_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.queue = queue
        self.remote = remote
        self.call_timeout = call_timeout or settings.REMOTE_CALL_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.MAX_SYNC_ATTEMPTS
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def sync_offline_data(self) -> SyncResult:
        """
        Run one sync cycle

        Returns:
            SyncResult with success/failed/dead_lettered counts. When a cycle
            is already running the call returns immediately with skipped=True.

        Raises:
            SyncEngineError: the local queue could not be read or updated
        """
        if self._lock.locked():
            logger.info("Sync already in progress, skipping trigger")
            return SyncResult(skipped=True)

        async with self._lock:
            with sync_cycle_context() as cycle_id:
                try:
                    return await self._run_cycle(cycle_id)
                except OfflineQueueError as e:
                    logger.error(f"Sync cycle aborted: {e}")
                    raise SyncEngineError(f"Offline queue unavailable: {e}") from e

    async def _run_cycle(self, cycle_id: str) -> SyncResult:
        result = SyncResult()
        resolved: dict[str, str] = {}  # local bag id -> server id
        failed_bags: set[str] = set()

        # 1. Evidence bags
        for record in await self.queue.list_unsynced(RecordKind.EVIDENCE_BAG):
            remote_id = await self._attempt(record, self._create_bag(record), result)
            if remote_id is None:
                failed_bags.add(record.id)
                continue

            resolved[record.id] = remote_id
            await self.queue.rewrite_bag_reference(record.id, remote_id)

        # 2. Custody entries
        for record in await self.queue.list_unsynced(RecordKind.CUSTODY_LOG):
            bag_id = await self._resolve_bag(record, resolved, failed_bags, result)
            if bag_id is None:
                continue
            await self._attempt(
                record,
                self.remote.add_custody_entry(
                    {**record.payload, "bag_id": bag_id},
                    idempotency_key=record.id,
                ),
                result,
            )

        # 3. Photos
        for record in await self.queue.list_unsynced(RecordKind.PHOTO):
            bag_id = await self._resolve_bag(record, resolved, failed_bags, result)
            if bag_id is None:
                continue
            await self._attempt(
                record,
                self.remote.upload_photo(
                    bag_id,
                    record.content,
                    record.content_type,
                    notes=record.payload.get("notes"),
                    file_hash=record.file_hash,
                    idempotency_key=record.id,
                ),
                result,
            )

        # 4. Cleanup, 5. status
        if result.success > 0:
            await self.queue.clear_synced()

        status = await self.queue.mark_sync_completed(
            {
                "cycle_id": cycle_id,
                "success": result.success,
                "failed": result.failed,
                "dead_lettered": result.dead_lettered,
            }
        )

        logger.info(
            f"Sync cycle finished: {result.success} synced, {result.failed} failed, "
            f"{result.dead_lettered} dead-lettered, {status.pending_count} pending"
        )
        return result

    async def _create_bag(self, record: PendingRecord) -> str:
        """Create one bag remotely; a response without an id counts as a failure"""
        created = await self.remote.create_evidence_bag(record.payload, idempotency_key=record.id)
        remote_id = created.get("id") if isinstance(created, dict) else None
        if not remote_id:
            raise RemoteWriteError("Remote platform created the bag but returned no id")
        return str(remote_id)

    async def _attempt(
        self,
        record: PendingRecord,
        call: Awaitable[Any],
        result: SyncResult,
    ) -> Optional[Any]:
        """
        Await one remote write under the per-call timeout

        Returns the remote response on success, None on failure. Remote
        failures of any kind are contained here; queue failures propagate.
        """
        try:
            response = await asyncio.wait_for(call, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            await self._record_failure(
                record, f"Timed out after {self.call_timeout:g}s", result
            )
            return None
        except Exception as e:
            await self._record_failure(record, f"{e.__class__.__name__}: {e}", result)
            return None

        await self.queue.mark_synced(record.kind, record.id)
        result.success += 1
        return response if response is not None else {}

    async def _record_failure(self, record: PendingRecord, error: str, result: SyncResult) -> None:
        result.failed += 1
        attempts = await self.queue.record_failure(record.kind, record.id, error)
        logger.warning(
            f"Failed to sync {record.kind.value} {record.id} (attempt {attempts}/{self.max_attempts}): {error}"
        )
        if attempts >= self.max_attempts:
            result.dead_lettered += await self.queue.dead_letter(
                record.kind,
                record.id,
                f"Gave up after {attempts} attempts: {error}",
            )

    async def _resolve_bag(
        self,
        record: PendingRecord,
        resolved: dict[str, str],
        failed_bags: set[str],
        result: SyncResult,
    ) -> Optional[str]:
        """
        Server id of the bag a custody/photo record belongs to

        Returns None when the record cannot be sent this cycle. A record whose
        bag failed this cycle waits without spending an attempt; a record whose
        local bag is no longer queued is counted as a failed attempt.
        """
        bag_id = record.bag_id or ""
        if not is_local_bag_id(bag_id):
            return bag_id
        if bag_id in resolved:
            return resolved[bag_id]

        if bag_id in failed_bags:
            result.failed += 1
            logger.info(f"Deferring {record.kind.value} {record.id}: bag {bag_id} has not synced yet")
            return None

        await self._record_failure(
            record, f"References offline bag {bag_id} that is no longer queued", result
        )
        return None


# Singleton instance
sync_engine = SyncEngine(offline_queue, remote_api)
