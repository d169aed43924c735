"""
Durable local queue of mutations made while the remote platform is unreachable

Three partitions (evidence bags, custody logs, photos) plus a singleton status
row and a dead-letter partition. Writes never touch the network. Every mutation
recomputes the status row in the same transaction.
"""
import json
import logging
import secrets
import string
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import func, select, update, delete
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..core.database import SessionLocal
from ..core.errors import OfflineQueueError, QueueQuotaExceededError, QueueStorageError
from ..db.models import (
    PendingEvidenceBag,
    PendingCustodyLog,
    PendingPhoto,
    SyncStatusRecord,
    DeadLetterRecord,
)
from ..schemas.drafts import (
    RecordKind,
    PendingRecord,
    EvidenceBagDraft,
    CustodyLogDraft,
    PhotoDraft,
)
from ..schemas.sync import SyncStatus, DeadLetterEntry
from .audit import audit_service
from .integrity import compute_file_hash, integrity_service

logger = logging.getLogger(__name__)

PARTITION_MODELS = {
    RecordKind.EVIDENCE_BAG: PendingEvidenceBag,
    RecordKind.CUSTODY_LOG: PendingCustodyLog,
    RecordKind.PHOTO: PendingPhoto,
}

STATUS_KEY = "main"
_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_millis() -> int:
    return int(time.time() * 1000)


def generate_record_id(kind: RecordKind, timestamp: Optional[int] = None) -> str:
    """offline-<kind>-<epoch millis>-<9 random base36 chars>"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{kind.id_prefix}-{timestamp or now_millis()}-{suffix}"


def payload_size(payload: dict[str, Any], content: Optional[bytes] = None) -> int:
    """Bytes a record occupies against the storage quota"""
    size = len(json.dumps(payload, default=str).encode("utf-8"))
    if content:
        size += len(content)
    return size


class OfflineQueue(ABC):
    """Storage interface the sync engine and the draft API depend on"""

    @abstractmethod
    async def enqueue(
        self,
        kind: RecordKind,
        payload: dict[str, Any],
        *,
        bag_id: Optional[str] = None,
        content: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Append an unsynced record; returns its id"""

    @abstractmethod
    async def list_unsynced(self, kind: RecordKind) -> list[PendingRecord]:
        """Unsynced records of one kind in insertion order"""

    @abstractmethod
    async def mark_synced(self, kind: RecordKind, record_id: str) -> None:
        """Flip the synced flag; unknown or already-synced ids are ignored"""

    @abstractmethod
    async def remove(self, kind: RecordKind, record_id: str) -> bool:
        """Delete a record; returns False when it was not present"""

    @abstractmethod
    async def clear_synced(self) -> int:
        """Remove every synced record across all partitions"""

    @abstractmethod
    async def rewrite_bag_reference(self, local_bag_id: str, remote_bag_id: str) -> int:
        """Point queued custody/photo records at the server-assigned bag id"""

    @abstractmethod
    async def record_failure(self, kind: RecordKind, record_id: str, error: str) -> int:
        """Count a failed sync attempt; returns the new attempt total"""

    @abstractmethod
    async def dead_letter(self, kind: RecordKind, record_id: str, reason: str) -> int:
        """Move a record (and, for bags, its dependents) out of the sync path"""

    @abstractmethod
    async def list_dead_letters(self) -> list[DeadLetterEntry]:
        ...

    @abstractmethod
    async def requeue_dead_letter(self, record_id: str) -> Optional[RecordKind]:
        """Return a dead-lettered record to its partition with a fresh attempt budget"""

    @abstractmethod
    async def recompute_status(self) -> SyncStatus:
        """Recount pending records and stamp last_activity"""

    @abstractmethod
    async def get_status(self) -> SyncStatus:
        ...

    @abstractmethod
    async def mark_sync_completed(self, summary: Optional[dict[str, Any]] = None) -> SyncStatus:
        """Recompute status and stamp last_sync at the end of a cycle"""


class SqlOfflineQueue(OfflineQueue):
    """OfflineQueue persisted in the local SQLite store"""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        clock: Callable[[], int] = now_millis,
        quota_bytes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.QUEUE_MAX_BYTES

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session whose storage failures surface as OfflineQueueError"""
        db = self.session_factory()
        try:
            yield db
        except OfflineQueueError:
            db.rollback()
            raise
        except OperationalError as e:
            db.rollback()
            if "full" in str(e.orig).lower():
                raise QueueQuotaExceededError(f"Local storage is full: {e.orig}") from e
            raise QueueStorageError(f"Offline store unavailable: {e.orig}") from e
        except SQLAlchemyError as e:
            db.rollback()
            raise QueueStorageError(f"Offline store error: {e}") from e
        finally:
            db.close()

    # ------------------------------------------------------------------ helpers

    def _used_bytes(self, db: Session) -> int:
        used = 0
        for model in (*PARTITION_MODELS.values(), DeadLetterRecord):
            used += db.scalar(select(func.coalesce(func.sum(model.payload_bytes), 0)))
        return used

    def _id_taken(self, db: Session, model, record_id: str) -> bool:
        return (
            db.scalar(select(model.id).where(model.id == record_id)) is not None
            or db.get(DeadLetterRecord, record_id) is not None
        )

    def _find(self, db: Session, kind: RecordKind, record_id: str):
        model = PARTITION_MODELS[kind]
        return db.scalar(select(model).where(model.id == record_id))

    def _count_unsynced(self, db: Session) -> int:
        total = 0
        for model in PARTITION_MODELS.values():
            total += db.scalar(
                select(func.count()).select_from(model).where(model.synced.is_(False))
            )
        return total

    def _recompute(self, db: Session, sync_completed: bool = False) -> SyncStatus:
        db.flush()  # Sessions do not autoflush; counts must see this transaction's writes
        status = db.get(SyncStatusRecord, STATUS_KEY)
        if status is None:
            status = SyncStatusRecord(key=STATUS_KEY, last_sync=0)
            db.add(status)

        now = self.clock()
        status.pending_count = self._count_unsynced(db)
        status.stuck_count = db.scalar(select(func.count()).select_from(DeadLetterRecord))
        status.last_activity = now
        if sync_completed:
            status.last_sync = now

        return SyncStatus(
            pending_count=status.pending_count,
            stuck_count=status.stuck_count,
            last_activity=status.last_activity,
            last_sync=status.last_sync or 0,
        )

    @staticmethod
    def _to_record(kind: RecordKind, row) -> PendingRecord:
        return PendingRecord(
            id=row.id,
            kind=kind,
            payload=row.data,
            bag_id=getattr(row, "bag_id", None),
            content=getattr(row, "content", None),
            content_type=getattr(row, "content_type", None),
            file_hash=getattr(row, "file_hash", None),
            timestamp=row.timestamp,
            synced=row.synced,
            attempts=row.attempts,
            last_error=row.last_error,
        )

    # --------------------------------------------------------------- operations

    async def enqueue(
        self,
        kind: RecordKind,
        payload: dict[str, Any],
        *,
        bag_id: Optional[str] = None,
        content: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> str:
        if kind.references_bag and not bag_id:
            raise ValueError(f"{kind.value} records require a bag_id")
        if kind is RecordKind.PHOTO and (not content or not content_type):
            raise ValueError("photo records require content and content_type")

        size = payload_size(payload, content)
        model = PARTITION_MODELS[kind]

        with self._session() as db:
            used = self._used_bytes(db)
            if used + size > self.quota_bytes:
                raise QueueQuotaExceededError(
                    f"Offline storage quota exceeded: {used} + {size} bytes (quota: {self.quota_bytes})",
                    requested_bytes=size,
                    quota_bytes=self.quota_bytes,
                )

            timestamp = self.clock()
            record_id = generate_record_id(kind, timestamp)
            while self._id_taken(db, model, record_id):
                record_id = generate_record_id(kind, timestamp)

            fields: dict[str, Any] = {
                "id": record_id,
                "data": payload,
                "payload_bytes": size,
                "timestamp": timestamp,
                "synced": False,
                "attempts": 0,
            }
            if kind.references_bag:
                fields["bag_id"] = bag_id
            if kind is RecordKind.PHOTO:
                fields["content"] = content
                fields["content_type"] = content_type
                fields["file_hash"] = compute_file_hash(content)

            db.add(model(**fields))
            db.flush()
            audit_service.log(
                db=db,
                action="queue.enqueue",
                resource_type=kind.partition,
                resource_id=record_id,
                result="success",
                metadata={"bytes": size, "bag_id": bag_id},
            )
            status = self._recompute(db)
            db.commit()

        logger.info(
            f"Queued {kind.value} {record_id} ({size} bytes, {status.pending_count} pending)"
        )
        return record_id

    async def list_unsynced(self, kind: RecordKind) -> list[PendingRecord]:
        model = PARTITION_MODELS[kind]
        with self._session() as db:
            rows = db.scalars(
                select(model).where(model.synced.is_(False)).order_by(model.timestamp, model.seq)
            ).all()
            return [self._to_record(kind, row) for row in rows]

    async def mark_synced(self, kind: RecordKind, record_id: str) -> None:
        with self._session() as db:
            row = self._find(db, kind, record_id)
            if row is None or row.synced:
                return
            row.synced = True
            row.last_error = None
            self._recompute(db)
            db.commit()

    async def remove(self, kind: RecordKind, record_id: str) -> bool:
        model = PARTITION_MODELS[kind]
        with self._session() as db:
            deleted = db.execute(delete(model).where(model.id == record_id)).rowcount
            if deleted:
                audit_service.log(
                    db=db,
                    action="queue.remove",
                    resource_type=kind.partition,
                    resource_id=record_id,
                    result="success",
                )
            self._recompute(db)
            db.commit()
            return bool(deleted)

    async def clear_synced(self) -> int:
        with self._session() as db:
            removed = 0
            for model in PARTITION_MODELS.values():
                removed += db.execute(delete(model).where(model.synced.is_(True))).rowcount
            self._recompute(db)
            db.commit()

        if removed:
            logger.info(f"Removed {removed} synced record(s) from offline queue")
        return removed

    async def rewrite_bag_reference(self, local_bag_id: str, remote_bag_id: str) -> int:
        with self._session() as db:
            rewritten = 0
            for model in (PendingCustodyLog, PendingPhoto, DeadLetterRecord):
                rewritten += db.execute(
                    update(model)
                    .where(model.bag_id == local_bag_id)
                    .values(bag_id=remote_bag_id)
                ).rowcount
            db.commit()

        if rewritten:
            logger.info(f"Repointed {rewritten} queued record(s) from {local_bag_id} to {remote_bag_id}")
        return rewritten

    async def record_failure(self, kind: RecordKind, record_id: str, error: str) -> int:
        with self._session() as db:
            row = self._find(db, kind, record_id)
            if row is None:
                return 0
            attempts = (row.attempts or 0) + 1
            row.attempts = attempts
            row.last_error = error[:2000]
            db.commit()
            return attempts

    def _move_to_dead_letter(self, db: Session, kind: RecordKind, row, reason: str) -> None:
        db.add(
            DeadLetterRecord(
                id=row.id,
                kind=kind.value,
                bag_id=getattr(row, "bag_id", None),
                data=row.data,
                content=getattr(row, "content", None),
                content_type=getattr(row, "content_type", None),
                file_hash=getattr(row, "file_hash", None),
                payload_bytes=row.payload_bytes,
                timestamp=row.timestamp,
                attempts=row.attempts,
                reason=reason,
            )
        )
        db.delete(row)
        audit_service.log(
            db=db,
            action="queue.dead_letter",
            resource_type=kind.partition,
            resource_id=row.id,
            result="dead_lettered",
            metadata={"attempts": row.attempts, "reason": reason},
        )

    async def dead_letter(self, kind: RecordKind, record_id: str, reason: str) -> int:
        with self._session() as db:
            row = self._find(db, kind, record_id)
            if row is None or row.synced:
                return 0

            self._move_to_dead_letter(db, kind, row, reason)
            moved = 1

            if kind is RecordKind.EVIDENCE_BAG:
                # Dependents can never resolve their bag reference
                for dep_kind in (RecordKind.CUSTODY_LOG, RecordKind.PHOTO):
                    model = PARTITION_MODELS[dep_kind]
                    dependents = db.scalars(
                        select(model).where(model.bag_id == record_id, model.synced.is_(False))
                    ).all()
                    for dependent in dependents:
                        self._move_to_dead_letter(
                            db, dep_kind, dependent, f"Evidence bag {record_id} was dead-lettered"
                        )
                        moved += 1

            self._recompute(db)
            db.commit()

        logger.warning(f"Dead-lettered {moved} record(s) starting at {kind.value} {record_id}: {reason}")
        return moved

    async def list_dead_letters(self) -> list[DeadLetterEntry]:
        with self._session() as db:
            rows = db.scalars(
                select(DeadLetterRecord).order_by(DeadLetterRecord.dead_lettered_at, DeadLetterRecord.timestamp)
            ).all()
            return [DeadLetterEntry.model_validate(row) for row in rows]

    async def requeue_dead_letter(self, record_id: str) -> Optional[RecordKind]:
        with self._session() as db:
            parked = db.get(DeadLetterRecord, record_id)
            if parked is None:
                return None

            kind = RecordKind(parked.kind)
            fields: dict[str, Any] = {
                "id": parked.id,
                "data": parked.data,
                "payload_bytes": parked.payload_bytes,
                "timestamp": parked.timestamp,
                "synced": False,
                "attempts": 0,
            }
            if kind.references_bag:
                fields["bag_id"] = parked.bag_id
            if kind is RecordKind.PHOTO:
                fields["content"] = parked.content
                fields["content_type"] = parked.content_type
                fields["file_hash"] = parked.file_hash

            db.add(PARTITION_MODELS[kind](**fields))
            db.delete(parked)
            audit_service.log(
                db=db,
                action="queue.requeue",
                resource_type=kind.partition,
                resource_id=record_id,
                result="success",
            )
            self._recompute(db)
            db.commit()

        logger.info(f"Requeued dead-lettered {kind.value} {record_id}")
        return kind

    async def recompute_status(self) -> SyncStatus:
        with self._session() as db:
            status = self._recompute(db)
            db.commit()
            return status

    async def get_status(self) -> SyncStatus:
        with self._session() as db:
            stored = db.get(SyncStatusRecord, STATUS_KEY)
            return SyncStatus(
                pending_count=self._count_unsynced(db),
                stuck_count=db.scalar(select(func.count()).select_from(DeadLetterRecord)),
                last_activity=stored.last_activity if stored else 0,
                last_sync=stored.last_sync if stored else 0,
            )

    async def mark_sync_completed(self, summary: Optional[dict[str, Any]] = None) -> SyncStatus:
        with self._session() as db:
            status = self._recompute(db, sync_completed=True)
            audit_service.log(
                db=db,
                action="sync.cycle",
                resource_type="sync",
                resource_id=STATUS_KEY,
                result="success" if not (summary or {}).get("failed") else "partial",
                metadata={**(summary or {}), "pending_count": status.pending_count},
            )
            db.commit()
            return status


async def save_offline_evidence_bag(queue: OfflineQueue, draft: EvidenceBagDraft) -> str:
    """Queue an evidence bag creation"""
    return await queue.enqueue(
        RecordKind.EVIDENCE_BAG,
        draft.model_dump(mode="json", exclude_none=True),
    )


async def save_offline_custody_log(queue: OfflineQueue, draft: CustodyLogDraft) -> str:
    """Queue a chain-of-custody entry; the bag reference is kept outside the payload"""
    return await queue.enqueue(
        RecordKind.CUSTODY_LOG,
        draft.model_dump(mode="json", exclude={"bag_id"}, exclude_none=True),
        bag_id=draft.bag_id,
    )


async def save_offline_photo(
    queue: OfflineQueue,
    draft: PhotoDraft,
    content: bytes,
    content_type: Optional[str] = None,
) -> str:
    """Validate and queue a photo blob with its metadata"""
    detected_type = integrity_service.validate_photo(content, content_type)
    return await queue.enqueue(
        RecordKind.PHOTO,
        draft.model_dump(mode="json", exclude={"bag_id"}, exclude_none=True),
        bag_id=draft.bag_id,
        content=content,
        content_type=detected_type,
    )


# Singleton instance
offline_queue = SqlOfflineQueue()
