from sqlalchemy import Column, String, Integer, BigInteger, Boolean, DateTime, JSON, Text, LargeBinary, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class PendingEvidenceBag(Base):
    """Evidence bag created while the remote platform was unreachable"""

    __tablename__ = "pending_evidence_bags"

    # Insertion sequence; ties on timestamp are broken by it
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)

    data = Column(JSON, nullable=False)
    payload_bytes = Column(Integer, nullable=False, default=0)

    timestamp = Column(BigInteger, nullable=False, index=True)  # epoch millis
    synced = Column(Boolean, nullable=False, default=False, index=True)

    # Retry bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PendingEvidenceBag(id={self.id}, synced={self.synced})>"


class PendingCustodyLog(Base):
    """Chain-of-custody entry recorded offline"""

    __tablename__ = "pending_custody_logs"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)

    # Local offline-bag id until the bag syncs, then the server id
    bag_id = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False)
    payload_bytes = Column(Integer, nullable=False, default=0)

    timestamp = Column(BigInteger, nullable=False, index=True)
    synced = Column(Boolean, nullable=False, default=False, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PendingCustodyLog(id={self.id}, bag={self.bag_id}, synced={self.synced})>"


class PendingPhoto(Base):
    """Photo (or video) captured offline, stored with its binary content"""

    __tablename__ = "pending_photos"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True)

    bag_id = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False)  # notes, file_name
    content = Column(LargeBinary, nullable=False)
    content_type = Column(String, nullable=False)
    file_hash = Column(String(64), nullable=False)
    payload_bytes = Column(Integer, nullable=False, default=0)

    timestamp = Column(BigInteger, nullable=False, index=True)
    synced = Column(Boolean, nullable=False, default=False, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<PendingPhoto(id={self.id}, bag={self.bag_id}, synced={self.synced})>"


class SyncStatusRecord(Base):
    """Singleton status row (key='main'), recomputed on every queue mutation"""

    __tablename__ = "sync_status"

    key = Column(String, primary_key=True)
    pending_count = Column(Integer, nullable=False, default=0)
    stuck_count = Column(Integer, nullable=False, default=0)
    last_activity = Column(BigInteger, nullable=False, default=0)
    last_sync = Column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SyncStatusRecord(pending={self.pending_count}, last_sync={self.last_sync})>"


class DeadLetterRecord(Base):
    """Record that exhausted its sync attempts and is no longer retried"""

    __tablename__ = "dead_letter_records"

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False, index=True)

    bag_id = Column(String, nullable=True, index=True)
    data = Column(JSON, nullable=False)
    content = Column(LargeBinary, nullable=True)
    content_type = Column(String, nullable=True)
    file_hash = Column(String(64), nullable=True)
    payload_bytes = Column(Integer, nullable=False, default=0)

    timestamp = Column(BigInteger, nullable=False)  # original creation time
    attempts = Column(Integer, nullable=False, default=0)
    reason = Column(Text, nullable=True)
    dead_lettered_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<DeadLetterRecord(id={self.id}, kind={self.kind}, attempts={self.attempts})>"


class SyncAuditLog(Base):
    """Append-only local log of queue and sync events"""

    __tablename__ = "sync_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    correlation_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False, index=True)

    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=False, index=True)

    audit_metadata = Column("metadata", JSON, nullable=True)  # Renamed to avoid SQLAlchemy reserved word
    result = Column(String, nullable=False)

    def __repr__(self) -> str:
        return f"<SyncAuditLog(id={self.id}, action={self.action}, resource={self.resource_id})>"


class AssetCacheEntry(Base):
    """Cached response for the offline application shell"""

    __tablename__ = "asset_cache_entries"

    cache_name = Column(String, primary_key=True)
    url = Column(String, primary_key=True)

    status_code = Column(Integer, nullable=False)
    headers = Column(JSON, nullable=False)
    body = Column(LargeBinary, nullable=False)
    stored_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_asset_cache_name", "cache_name"),
    )

    def __repr__(self) -> str:
        return f"<AssetCacheEntry(cache={self.cache_name}, url={self.url})>"
