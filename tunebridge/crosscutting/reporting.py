import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Any, Optional


class TrackStatus(str, Enum):
    """Final state of one source track in a sync run."""

    ADDED = "added"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class TrackOutcome:
    """What happened to one source track."""

    position: int
    name: str
    artist: str
    status: TrackStatus
    tier: str = "none"
    confidence: Optional[str] = None
    score: float = 0
    candidate_id: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "name": self.name,
            "artist": self.artist,
            "status": self.status.value,
            "tier": self.tier,
            "confidence": self.confidence,
            "score": self.score,
            "candidateId": self.candidate_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrackOutcome":
        return cls(
            position=data["position"],
            name=data.get("name", ""),
            artist=data.get("artist", ""),
            status=TrackStatus(data["status"]),
            tier=data.get("tier", "none"),
            confidence=data.get("confidence"),
            score=data.get("score", 0),
            candidate_id=data.get("candidateId"),
        )


@dataclass
class SyncReport:
    """Audit record of a sync run: header, aggregate stats and per-track outcomes."""

    job_id: str
    source_ref: str
    destination_ref: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    tracks: List[TrackOutcome] = field(default_factory=list)

    @classmethod
    def from_job(cls, job) -> "SyncReport":
        """Build a report from a SyncJob (terminal or not)."""
        return cls(
            job_id=job.id,
            source_ref=job.source_ref,
            destination_ref=job.destination_ref,
            status=job.status.value,
            started_at=job.started_at,
            finished_at=job.finished_at,
            stats=job.stats.to_json(),
            error=job.error,
            tracks=list(job.track_outcomes),
        )

    def counts_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TrackStatus}
        for t in self.tracks:
            counts[t.status.value] += 1
        return counts

    def to_json(self) -> Dict[str, Any]:
        return {
            "header": {
                "jobId": self.job_id,
                "sourceRef": self.source_ref,
                "destinationRef": self.destination_ref,
                "status": self.status,
                "startedAt": self.started_at.isoformat(),
                "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
                "error": self.error,
            },
            "stats": dict(self.stats),
            "tracks": [t.to_json() for t in self.tracks],
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SyncReport":
        header = data["header"]
        return cls(
            job_id=header["jobId"],
            source_ref=header.get("sourceRef", ""),
            destination_ref=header.get("destinationRef", ""),
            status=header.get("status", ""),
            started_at=datetime.fromisoformat(header["startedAt"]),
            finished_at=datetime.fromisoformat(header["finishedAt"]) if header.get("finishedAt") else None,
            stats=data.get("stats", {}),
            error=header.get("error"),
            tracks=[TrackOutcome.from_json(t) for t in data.get("tracks", [])],
        )

    def save(self, path) -> Path:
        """Write the report as pretty-printed JSON and return the path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_json(), f, indent=2, ensure_ascii=False)
        return path
