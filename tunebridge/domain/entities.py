from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SourceTrack:
    """Track read from the source catalog. Identity is its position plus its content."""

    name: str = ""
    artists: List[str] = None
    album: str = ""
    duration_ms: int = 0
    isrc: Optional[str] = None
    source_id: Optional[str] = None
    position: int = 0
    primary_artist: str = ""

    def __post_init__(self):
        if self.artists is None:
            object.__setattr__(self, 'artists', [])
        if not self.primary_artist and self.artists:
            object.__setattr__(self, 'primary_artist', self.artists[0])


@dataclass(frozen=True)
class Candidate:
    """Destination catalog track proposed for a source track."""

    catalog_id: str
    name: str = ""
    artist_name: str = ""
    album_name: str = ""
    duration_ms: Optional[int] = None
    library_id: Optional[str] = None


@dataclass(frozen=True)
class DestinationItem:
    """One entry of a destination playlist as returned by a paginated read."""

    item_id: str
    item_type: str = "songs"
    catalog_id: Optional[str] = None
    name: str = ""
    artist_name: str = ""
    album_name: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class Playlist:
    """Domain entity representing a playlist."""

    id: str
    name: str
    owner_id: str = ""
    is_owned: bool = False
    track_count: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "isOwned": self.is_owned,
            "trackCount": self.track_count,
        }


class MatchTier(str, Enum):
    ISRC = "isrc"
    PRECISE_METADATA = "precise_metadata"
    FLEXIBLE_SEARCH = "flexible_search"
    NONE = "none"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one source track. The chosen candidate is final."""

    source_track: SourceTrack
    candidate: Optional[Candidate]
    tier: MatchTier = MatchTier.NONE
    score: float = 0
    confidence: Confidence = Confidence.LOW
    reason: str = "not_found"

    @property
    def matched(self) -> bool:
        return self.candidate is not None


@dataclass(frozen=True)
class AddResult:
    """Result of adding candidate ids to a playlist."""

    added: int
    failed: int
    added_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class SyncStats:
    total: int = 0
    matched: int = 0
    added: int = 0
    skipped_duplicate: int = 0
    unavailable: int = 0
    failed: int = 0

    def to_json(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "matched": self.matched,
            "added": self.added,
            "skippedDuplicate": self.skipped_duplicate,
            "unavailable": self.unavailable,
            "failed": self.failed,
        }


@dataclass
class SyncJob:
    """One end-to-end transfer. Mutated only by the orchestrator driving it."""

    id: str
    source_ref: str
    destination_ref: str
    status: SyncStatus = SyncStatus.PENDING
    current: int = 0
    total: int = 0
    step: str = ""
    stats: SyncStats = field(default_factory=SyncStats)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    track_outcomes: List[Any] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncStatus.COMPLETED, SyncStatus.ERROR)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceRef": self.source_ref,
            "destinationRef": self.destination_ref,
            "status": self.status.value,
            "progress": {"current": self.current, "total": self.total, "step": self.step},
            "stats": self.stats.to_json(),
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ScheduledJob:
    """Persisted recurring sync definition."""

    id: str
    name: str = "Auto Sync"
    mode: str = "map"
    source_service: str = "spotify"
    destination_service: str = "apple"
    source_playlist_ids: List[str] = field(default_factory=list)
    destination_playlist_id: Optional[str] = None
    mappings: List[Dict[str, Any]] = field(default_factory=list)
    time_of_day: str = "16:00"
    storefront: str = "us"
    enabled: bool = True
    created_at: Optional[str] = None
    last_run_at: Optional[str] = None
    next_run_at: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mode": self.mode,
            "sourceService": self.source_service,
            "destinationService": self.destination_service,
            "sourcePlaylistIds": list(self.source_playlist_ids),
            "destinationPlaylistId": self.destination_playlist_id,
            "mappings": [dict(m) for m in self.mappings],
            "timeOfDay": self.time_of_day,
            "storefront": self.storefront,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "lastRunAt": self.last_run_at,
            "nextRunAt": self.next_run_at,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ScheduledJob":
        return cls(
            id=data["id"],
            name=data.get("name", "Auto Sync"),
            mode=data.get("mode", "map"),
            source_service=data.get("sourceService", "spotify"),
            destination_service=data.get("destinationService", "apple"),
            source_playlist_ids=list(data.get("sourcePlaylistIds") or []),
            destination_playlist_id=data.get("destinationPlaylistId"),
            mappings=list(data.get("mappings") or []),
            time_of_day=data.get("timeOfDay", "16:00"),
            storefront=data.get("storefront", "us"),
            enabled=bool(data.get("enabled", True)),
            created_at=data.get("createdAt"),
            last_run_at=data.get("lastRunAt"),
            next_run_at=data.get("nextRunAt"),
        )
