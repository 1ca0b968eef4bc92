"""Shared data models for the mirror monitor."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union


def utcnow() -> datetime:
    """Timezone-aware current time, used as the default clock."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SiteStatus(str, enum.Enum):
    """Last known state of a site record."""

    UNKNOWN = "UNKNOWN"
    WORKING = "WORKING"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"
    DOWN = "DOWN"


class SearchProvider(str, enum.Enum):
    """Search engines driven through the headless browser."""

    PRIMARY = "google"
    SECONDARY = "duckduckgo"


class HealthStatus(str, enum.Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


class EventKind(str, enum.Enum):
    """Discriminator for notifier events."""

    SITE_DOWN = "site_down"
    SITE_RECOVERED = "site_recovered"
    DOMAIN_CHANGED = "domain_changed"
    SWEEP_SUMMARY = "sweep_summary"
    TEST = "test"


@dataclass(frozen=True)
class SiteProfile:
    """Static search metadata for one logical site."""

    name: str
    display_name: str
    query_aliases: tuple[str, ...]
    domain_pattern: str
    description: str = ""


@dataclass
class SiteRecord:
    """Persisted current view of a site."""

    name: str
    id: Optional[int] = None
    current_working_url: Optional[str] = None
    status: SiteStatus = SiteStatus.UNKNOWN
    last_checked: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    response_time: Optional[int] = None  # milliseconds
    is_active: bool = True
    notes: Optional[str] = None


@dataclass
class SearchResult:
    """One result item extracted from a search results page."""

    title: str
    url: str
    provider: Optional[SearchProvider] = None


@dataclass
class ProbeResult:
    """Outcome of a reachability probe."""

    url: str
    reachable: bool
    latency_ms: int
    observed_status: int = 0
    error: Optional[str] = None


@dataclass
class StatusTransition:
    """A change in a site's status or working URL."""

    kind: EventKind
    site_name: str
    from_status: SiteStatus
    to_status: SiteStatus
    old_url: Optional[str]
    new_url: Optional[str]
    at: datetime

    @property
    def action(self) -> str:
        return self.kind.value

    def to_payload(self) -> dict[str, Any]:
        return {
            "siteName": self.site_name,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "oldUrl": self.old_url,
            "newUrl": self.new_url,
            "at": _iso(self.at),
        }


@dataclass
class SweepSummary:
    """Totals emitted at the end of a full sweep."""

    checked: int
    working: int
    down: int
    transitions: int
    started_at: datetime
    completed_at: datetime
    trigger: str = "scheduled"  # scheduled | manual
    kind: EventKind = field(default=EventKind.SWEEP_SUMMARY, init=False)

    @property
    def action(self) -> str:
        return self.kind.value

    def to_payload(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "working": self.working,
            "down": self.down,
            "transitions": self.transitions,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "trigger": self.trigger,
        }


@dataclass
class TestNotification:
    """Operator-triggered message used to verify notification delivery."""

    __test__ = False  # keep pytest from collecting this class

    message: str
    at: datetime
    kind: EventKind = field(default=EventKind.TEST, init=False)

    @property
    def action(self) -> str:
        return self.kind.value

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "at": _iso(self.at)}


Event = Union[StatusTransition, SweepSummary, TestNotification]


@dataclass
class SweepOutcome:
    """Per-sweep bookkeeping returned by the monitor."""

    checked: int = 0
    working: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    aborted: bool = False
    events: list[StatusTransition] = field(default_factory=list)

    @property
    def down(self) -> int:
        return self.checked - self.working


@dataclass
class SweepAck:
    """Acknowledgement returned when a background sweep is scheduled."""

    accepted: bool
    requested_at: datetime
    message: str = "Full sweep scheduled"


@dataclass
class HealthReport:
    """Aggregate health derived from the stored records."""

    status: HealthStatus
    total_sites: int
    working: int
    down: int
    uptime_pct: float
    avg_response_ms: float
    last_checked: Optional[datetime]
    overdue: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "totalSites": self.total_sites,
            "working": self.working,
            "down": self.down,
            "uptimePct": round(self.uptime_pct, 2),
            "avgResponseMs": round(self.avg_response_ms, 1),
            "lastChecked": _iso(self.last_checked),
            "overdue": self.overdue,
        }


@dataclass
class SitePage:
    """A page of site records for admin listings."""

    items: list[SiteRecord]
    total_elements: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return -(-self.total_elements // self.size)


@dataclass
class SiteView:
    """Transport shape handed to the HTTP surface.

    Internal fields (``id`` and ``notes``) are only populated when a caller
    explicitly asks for them.
    """

    name: str
    url: Optional[str]
    status: str
    last_checked: Optional[str]
    last_updated: Optional[str]
    response_time: Optional[int]
    is_active: bool
    id: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_record(cls, record: SiteRecord, include_internal: bool = False) -> "SiteView":
        return cls(
            name=record.name,
            url=record.current_working_url,
            status=record.status.value,
            last_checked=_iso(record.last_checked),
            last_updated=_iso(record.last_updated),
            response_time=record.response_time,
            is_active=record.is_active,
            id=record.id if include_internal else None,
            notes=record.notes if include_internal else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "name": self.name,
            "url": self.url,
            "status": self.status,
            "lastChecked": self.last_checked,
            "lastUpdated": self.last_updated,
            "responseTime": self.response_time,
            "isActive": self.is_active,
        }
        if self.id is not None:
            data["id"] = self.id
        if self.notes is not None:
            data["notes"] = self.notes
        return data
