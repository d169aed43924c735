from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..services.integrity import validate_coordinates


class EvidenceType(str, Enum):
    WEAPON = "weapon"
    CLOTHING = "clothing"
    BIOLOGICAL_SAMPLE = "biological_sample"
    DOCUMENTS = "documents"
    ELECTRONICS = "electronics"
    OTHER = "other"


class EvidenceStatus(str, Enum):
    COLLECTED = "collected"
    IN_TRANSPORT = "in_transport"
    IN_LAB = "in_lab"
    ANALYZED = "analyzed"
    ARCHIVED = "archived"


class ActionType(str, Enum):
    COLLECTED = "collected"
    PACKED = "packed"
    TRANSFERRED = "transferred"
    RECEIVED = "received"
    ANALYZED = "analyzed"
    ARCHIVED = "archived"


class RecordKind(str, Enum):
    """Entity kinds held in the offline queue, in sync order"""

    EVIDENCE_BAG = "evidence_bag"
    CUSTODY_LOG = "custody_log"
    PHOTO = "photo"

    @property
    def partition(self) -> str:
        return {
            RecordKind.EVIDENCE_BAG: "pendingEvidenceBags",
            RecordKind.CUSTODY_LOG: "pendingCustodyLogs",
            RecordKind.PHOTO: "pendingPhotos",
        }[self]

    @property
    def id_prefix(self) -> str:
        return {
            RecordKind.EVIDENCE_BAG: "offline-bag",
            RecordKind.CUSTODY_LOG: "offline-custody",
            RecordKind.PHOTO: "offline-photo",
        }[self]

    @property
    def references_bag(self) -> bool:
        return self is not RecordKind.EVIDENCE_BAG


LOCAL_BAG_ID_PREFIX = RecordKind.EVIDENCE_BAG.id_prefix + "-"


def is_local_bag_id(bag_id: str) -> bool:
    """True when a bag reference still points at an unsynced offline draft"""
    return bag_id.startswith(LOCAL_BAG_ID_PREFIX)


class _Coordinates(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def reject_null_island(self):
        validate_coordinates(self.latitude, self.longitude)
        return self


class EvidenceBagDraft(_Coordinates):
    """Fields needed to create an evidence bag remotely"""

    bag_id: Optional[str] = Field(None, max_length=64)  # Display id; generated remotely when absent
    type: EvidenceType
    description: str = Field(..., min_length=1, max_length=2000)
    initial_collector: str = Field(..., min_length=1)
    date_collected: datetime
    location: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=2000)
    current_status: EvidenceStatus = EvidenceStatus.COLLECTED
    qr_data: Optional[str] = None


class CustodyLogDraft(_Coordinates):
    """Chain-of-custody entry to append remotely"""

    bag_id: str = Field(..., min_length=1)
    action: ActionType
    performed_by: str = Field(..., min_length=1)
    timestamp: datetime
    location: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=500)


class PhotoDraft(BaseModel):
    """Metadata accompanying a queued photo blob"""

    bag_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=500)
    file_name: Optional[str] = Field(None, max_length=255)


class PendingRecord(BaseModel):
    """A queued mutation awaiting remote persistence"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: RecordKind
    payload: dict[str, Any]
    bag_id: Optional[str] = None
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    file_hash: Optional[str] = None
    timestamp: int
    synced: bool = False
    attempts: int = 0
    last_error: Optional[str] = None


class PendingRecordSummary(BaseModel):
    """Queued record as listed by the API (no binary content)"""

    id: str
    kind: RecordKind
    bag_id: Optional[str]
    payload: dict[str, Any]
    content_type: Optional[str] = None
    file_hash: Optional[str] = None
    timestamp: int
    attempts: int
    last_error: Optional[str]


class DraftQueuedResponse(BaseModel):
    """Response after a draft was written to the offline queue"""

    id: str
    kind: RecordKind
    pending_count: int
