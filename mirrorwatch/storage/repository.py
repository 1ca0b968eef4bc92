"""Site record repository port and in-memory adapter."""

import abc
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional

from mirrorwatch.models import SiteRecord, SiteStatus

logger = logging.getLogger(__name__)


class SiteRepository(abc.ABC):
    """Single source of persistent truth for site records.

    Implementations must be safe to call from several tasks or threads
    and must make ``upsert`` atomic per record. Returned records are
    copies; mutating them never changes stored state.
    """

    @abc.abstractmethod
    def get_by_name(self, name: str) -> Optional[SiteRecord]:
        """Case-insensitive lookup by logical name."""

    @abc.abstractmethod
    def get_by_id(self, record_id: int) -> Optional[SiteRecord]:
        ...

    @abc.abstractmethod
    def upsert(self, record: SiteRecord) -> SiteRecord:
        """Insert or replace by name, assigning an id to new records.

        Returns:
            The stored record, with its id.
        """

    @abc.abstractmethod
    def list_all(self) -> list[SiteRecord]:
        ...

    @abc.abstractmethod
    def list_stale(self, older_than: datetime) -> list[SiteRecord]:
        """Records never checked or last checked before ``older_than``."""

    @abc.abstractmethod
    def count_by_status(self) -> dict[SiteStatus, int]:
        """Histogram over every status, zero-filled."""

    @abc.abstractmethod
    def list_recently_updated(self, since: datetime) -> list[SiteRecord]:
        """Records with ``last_updated >= since``, newest first."""

    @abc.abstractmethod
    def delete(self, record_id: int) -> None:
        """Remove a record; deleting a missing id is a no-op."""


class InMemorySiteRepository(SiteRepository):
    """Process-local repository guarded by a lock."""

    def __init__(self, records: Optional[list[SiteRecord]] = None):
        self._lock = threading.RLock()
        self._by_id: dict[int, SiteRecord] = {}
        self._next_id = 1
        for record in records or []:
            self.upsert(record)

    def get_by_name(self, name: str) -> Optional[SiteRecord]:
        key = name.strip().lower()
        with self._lock:
            for record in self._by_id.values():
                if record.name.lower() == key:
                    return replace(record)
        return None

    def get_by_id(self, record_id: int) -> Optional[SiteRecord]:
        with self._lock:
            record = self._by_id.get(record_id)
            return replace(record) if record else None

    def upsert(self, record: SiteRecord) -> SiteRecord:
        with self._lock:
            existing = self.get_by_name(record.name)
            if existing is not None:
                record_id = existing.id
            elif record.id is not None and record.id not in self._by_id:
                record_id = record.id
            else:
                record_id = self._next_id
            self._next_id = max(self._next_id, record_id + 1)

            stored = replace(record, id=record_id)
            self._by_id[record_id] = stored
            logger.debug("Upserted %s (id=%d, status=%s)", stored.name, record_id, stored.status.value)
            return replace(stored)

    def list_all(self) -> list[SiteRecord]:
        with self._lock:
            return [replace(r) for r in sorted(self._by_id.values(), key=lambda r: r.id)]

    def list_stale(self, older_than: datetime) -> list[SiteRecord]:
        return [
            r for r in self.list_all()
            if r.last_checked is None or r.last_checked < older_than
        ]

    def count_by_status(self) -> dict[SiteStatus, int]:
        counts = {status: 0 for status in SiteStatus}
        for record in self.list_all():
            counts[record.status] += 1
        return counts

    def list_recently_updated(self, since: datetime) -> list[SiteRecord]:
        recent = [
            r for r in self.list_all()
            if r.last_updated is not None and r.last_updated >= since
        ]
        recent.sort(key=lambda r: r.last_updated, reverse=True)
        return recent

    def delete(self, record_id: int) -> None:
        with self._lock:
            if self._by_id.pop(record_id, None) is not None:
                logger.debug("Deleted site record %d", record_id)
