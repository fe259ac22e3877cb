from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from competitor_alert.models.schemas import (
    Alert,
    AlertRun,
    ClassifiedHit,
    Competitor,
    PresenceRecord,
)
from competitor_alert.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


def build_dedupe_key(title: str, url: str) -> str:
    return hashlib.sha256(f"{title}{url}".encode("utf-8")).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DedupEngine:
    """Writes a presence record only when no twin exists inside the alert's window.

    The duplicate check and the write happen under a lock striped on
    (competitor, dedupe key), so two executions racing on the same mention
    cannot both store it.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.gateway = gateway
        self._clock = clock
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, competitor_name: str, dedupe_key: str) -> threading.Lock:
        return self._locks[hash((competitor_name, dedupe_key)) % LOCK_STRIPES]

    def record_if_new(
        self,
        alert: Alert,
        run: AlertRun,
        competitor: Competitor,
        platform: str,
        classified: ClassifiedHit,
    ) -> Optional[PresenceRecord]:
        dedupe_key = build_dedupe_key(classified.title, classified.url)
        competitor_name = competitor.canonical_name

        with self._lock_for(competitor_name, dedupe_key):
            now = self._clock()
            if self.gateway.check_duplicate_presence(
                dedupe_key, competitor_name, alert.dedupe_window_days, now
            ):
                logger.debug(
                    "Duplicate presence for %s skipped: %s",
                    competitor_name,
                    classified.url,
                )
                return None

            record = PresenceRecord(
                record_id=str(uuid.uuid4()),
                alert_id=alert.alert_id,
                run_id=run.run_id,
                competitor_name=competitor_name,
                platform=platform,
                title=classified.title,
                url=classified.url,
                snippet=classified.snippet,
                dedupe_key=dedupe_key,
                detection_method=classified.detection_method,
                created_at=now,
            )
            return self.gateway.create_presence_record(record)
