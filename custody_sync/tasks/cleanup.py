"""Cleanup tasks for the offline queue"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..core.database import SessionLocal
from ..db.models import DeadLetterRecord
from ..services.offline_queue import OfflineQueue, offline_queue


def purge_dead_letters(days: Optional[int] = None, session_factory: sessionmaker = SessionLocal) -> int:
    """
    Delete dead-lettered records parked more than N days ago

    Returns number of deleted records
    """
    days = settings.DEAD_LETTER_RETENTION_DAYS if days is None else days
    db = session_factory()
    try:
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
        deleted = db.query(DeadLetterRecord).filter(
            DeadLetterRecord.dead_lettered_at < cutoff
        ).delete()
        db.commit()
        return deleted
    finally:
        db.close()


def clear_synced_items(queue: OfflineQueue = offline_queue) -> int:
    """Remove records already confirmed by the server, outside a sync cycle"""
    return asyncio.run(queue.clear_synced())


if __name__ == "__main__":
    # Manual cleanup
    purged = purge_dead_letters()
    print(f"Purged {purged} dead-lettered records")
    cleared = clear_synced_items()
    print(f"Cleared {cleared} synced records")
