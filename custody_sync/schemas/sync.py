from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional

from .drafts import RecordKind


class SyncStatus(BaseModel):
    """
    Derived queue summary

    last_activity: epoch millis of the latest queue mutation
    last_sync: epoch millis of the latest completed sync cycle (0 = never)
    """

    pending_count: int = 0
    stuck_count: int = 0
    last_activity: int = 0
    last_sync: int = 0


class SyncResult(BaseModel):
    """Aggregate outcome of one sync cycle"""

    success: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: bool = False  # Another cycle was already running


class SyncStatusResponse(SyncStatus):
    """Status surface shown to the user"""

    online: bool
    syncing: bool
    can_sync_now: bool


class ConnectivityUpdate(BaseModel):
    online: bool


class DeadLetterEntry(BaseModel):
    """Record parked after exhausting its sync attempts"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: RecordKind
    bag_id: Optional[str]
    attempts: int
    reason: Optional[str]
    timestamp: int
    dead_lettered_at: datetime


class ConnectivityResponse(BaseModel):
    """Connectivity state after an update, with the sync it triggered (if any)"""

    online: bool
    sync: Optional[SyncResult] = None
