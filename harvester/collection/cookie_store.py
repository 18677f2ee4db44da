"""
Last-known-good cookie cache.

Holds one CookieRecord per site plus the time the last full collection
cycle completed. Records are only ever replaced by a newer successful
visit for the same site: nothing expires, and a failed visit leaves the
previous record in place. Staleness is visible only through last_updated.

Writes install a new read-only mapping instead of mutating the current
one, so a snapshot taken mid-cycle is always a consistent point-in-time
view.
"""

from __future__ import annotations

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

from harvester.collection.models import EMPTY_RECORDS, CookieRecord, StoreSnapshot

logger = logging.getLogger(__name__)


class CookieStore:
    """In-memory site_key → CookieRecord cache with a freshness stamp."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._records: Mapping[str, CookieRecord] = EMPTY_RECORDS
        self._last_updated: Optional[datetime] = None
        self._log = log or logger

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(records=self._records, last_updated=self._last_updated)

    def merge(self, site_key: str, record: CookieRecord) -> None:
        """Replace the entry for `site_key`; every other entry is untouched."""
        if record.site_key != site_key:
            raise ValueError(
                f"Record for {record.site_key!r} cannot be stored under {site_key!r}"
            )
        updated = dict(self._records)
        updated[site_key] = record
        self._records = MappingProxyType(updated)
        self._log.debug(
            "cookie_store_merged",
            extra={"site_key": site_key, "cookie_count": record.cookie_count},
        )

    def stamp(self, when: datetime) -> None:
        """Mark a full collection cycle as completed at `when`."""
        self._last_updated = when

    def get(self, site_key: str) -> Optional[CookieRecord]:
        return self._records.get(site_key)

    def has_data(self, site_key: str) -> bool:
        record = self._records.get(site_key)
        return record is not None and bool(record.cookie_header)

    @property
    def last_updated(self) -> Optional[datetime]:
        return self._last_updated

    def __len__(self) -> int:
        return len(self._records)
