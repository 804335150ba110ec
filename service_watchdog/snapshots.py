from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from .errors import PersistenceFailure
from .models import StatusLogEntry, utcnow
from .store import ServiceStore


logger = structlog.get_logger(__name__)

DEFAULT_SNAPSHOT_INTERVAL_SECONDS = 60 * 60
SNAPSHOT_JOB_ID = "history-snapshot"


class HistorySnapshotter:
    """Records every service's current status, transition or not, so quiet days still show up."""

    def __init__(self, store: ServiceStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def take_snapshot(self) -> int:
        try:
            services = await self.store.find()
            now = self.clock()
            entries = [StatusLogEntry(service_id=s.id, status=s.status, checked_at=now) for s in services]
            if entries:
                await self.store.insert_many(entries)
        except PersistenceFailure as e:
            logger.error("Snapshot failed", error=str(e))
            return 0
        logger.info("Snapshot recorded", services=len(entries))
        return len(entries)
