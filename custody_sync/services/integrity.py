import hashlib
import logging
import magic
from typing import Optional

from ..core.config import settings
from ..core.errors import DraftRejectedError

logger = logging.getLogger(__name__)


def compute_file_hash(file_bytes: bytes) -> str:
    """SHA-256 of file content as lowercase hex"""
    return hashlib.sha256(file_bytes).hexdigest()


def verify_file_hash(file_bytes: bytes, expected_hash: str) -> bool:
    """Check content against a previously recorded SHA-256"""
    return compute_file_hash(file_bytes) == expected_hash.lower()


def validate_coordinates(latitude: Optional[float], longitude: Optional[float]) -> None:
    """
    Reject coordinates a failed GPS fix reports

    Raises:
        ValueError: out of range, or exactly (0, 0)
    """
    if latitude is not None and not -90 <= latitude <= 90:
        raise ValueError(f"Latitude out of range: {latitude}")
    if longitude is not None and not -180 <= longitude <= 180:
        raise ValueError(f"Longitude out of range: {longitude}")
    if latitude == 0 and longitude == 0:
        raise ValueError("Invalid coordinates: GPS may not be functioning")


class IntegrityService:
    """Local validation applied to drafts before they are queued"""

    def sniff_mime(self, file_bytes: bytes) -> str:
        return magic.from_buffer(file_bytes, mime=True)

    def validate_photo(
        self,
        file_bytes: bytes,
        declared_type: Optional[str] = None,
    ) -> str:
        """
        Validate a photo/video blob for offline queuing

        Args:
            file_bytes: Raw content
            declared_type: Content type reported by the capturing device

        Returns:
            Content type to store (the sniffed type)

        Raises:
            DraftRejectedError: empty, oversized or disallowed media
        """
        size = len(file_bytes)
        if size == 0:
            raise DraftRejectedError("Photo is empty")

        if size > settings.MAX_PHOTO_BYTES:
            raise DraftRejectedError(
                f"Photo exceeds offline limit: {size} bytes (max: {settings.MAX_PHOTO_BYTES})"
            )

        detected = self.sniff_mime(file_bytes)
        if detected not in settings.ALLOWED_PHOTO_MIMES:
            raise DraftRejectedError(
                f"Media type not allowed: {detected} "
                f"(allowed: {', '.join(settings.ALLOWED_PHOTO_MIMES)})"
            )

        if declared_type and declared_type != detected:
            logger.info(f"Photo content type mismatch: declared={declared_type} detected={detected}")

        return detected


# Singleton instance
integrity_service = IntegrityService()
