"""
Data model for cookie collection.

Plain frozen dataclasses for everything that flows between the visit
jobs, the scheduler and the store. Configuration lives in pydantic models
(see job_config.py and browser/config.py); these are internal values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from harvester.exceptions import VisitError

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CollectionTrigger(str, Enum):
    """What started a collection run."""

    STARTUP = "startup"
    PERIODIC = "periodic"
    MANUAL = "manual"
    ADHOC = "adhoc"

    @property
    def is_guarded(self) -> bool:
        """Guarded triggers share the single-flight flag."""
        return self is not CollectionTrigger.ADHOC


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class CookieRecord:
    """Cookies harvested from one successful visit."""

    site_key: str
    cookie_header: str
    cookie_count: int
    collected_at: datetime
    url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "siteKey": self.site_key,
            "cookies": self.cookie_header,
            "cookieCount": self.cookie_count,
            "collectedAt": self.collected_at.isoformat(),
            "url": self.url,
        }


VisitOutcome = Union[CookieRecord, VisitError]


@dataclass
class CollectionRun:
    """
    One guarded collection cycle while it executes.

    The scheduler drops its reference once the merge is done; the object
    is handed back to the caller of run_cycle() for reporting only.
    """

    trigger: CollectionTrigger
    started_at: datetime
    run_id: str
    outcomes: dict[str, VisitOutcome] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> list[str]:
        return [k for k, v in self.outcomes.items() if isinstance(v, CookieRecord)]

    @property
    def failed(self) -> list[str]:
        return [k for k, v in self.outcomes.items() if isinstance(v, VisitError)]


@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time, read-only view of the cookie store."""

    records: Mapping[str, CookieRecord]
    last_updated: Optional[datetime]

    @property
    def is_collected(self) -> bool:
        """False until the first collection cycle has completed."""
        return self.last_updated is not None

    def cookie_header(self, site_key: str) -> Optional[str]:
        record = self.records.get(site_key)
        return record.cookie_header if record else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cookies": {key: rec.cookie_header for key, rec in self.records.items()},
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }


EMPTY_RECORDS: Mapping[str, CookieRecord] = MappingProxyType({})


@dataclass(frozen=True)
class VisitResult:
    """
    Outcome of an ad-hoc visit, as data.

    Exactly one of `record` and `error` is set.
    """

    url: str
    timestamp: datetime
    record: Optional[CookieRecord] = None
    error: Optional[VisitError] = None

    @property
    def success(self) -> bool:
        return self.record is not None

    @classmethod
    def ok(cls, record: CookieRecord) -> "VisitResult":
        return cls(url=record.url or "", timestamp=record.collected_at, record=record)

    @classmethod
    def failed(cls, error: VisitError, timestamp: datetime) -> "VisitResult":
        return cls(url=error.target, timestamp=timestamp, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.record is not None:
            return {
                "success": True,
                "cookies": self.record.cookie_header,
                "cookieCount": self.record.cookie_count,
                "url": self.url,
                "timestamp": self.timestamp.isoformat(),
            }
        return {
            "success": False,
            "error": str(self.error),
            "url": self.url,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RefreshAccepted:
    """Returned when a manual refresh was started in the background."""

    trigger: CollectionTrigger
    accepted_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": "Cookie refresh triggered",
            "timestamp": self.accepted_at.isoformat(),
        }
