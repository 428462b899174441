import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tunebridge.domain.entities import SyncJob, SyncStatus


logger = logging.getLogger(__name__)

HISTORY_KEY = 'transferHistory'
MAX_RECORDS = 100


def _success_rate(matched: int, total: int) -> float:
    return round(matched * 100.0 / total, 1) if total else 0.0


class TransferHistory:
    """Persistent log of sync runs keyed by job id, newest first.

    Records are kept under one key of a key/value store and capped at
    `max_records`; the oldest records are dropped first.
    """

    def __init__(self, store, max_records: int = MAX_RECORDS,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.max_records = max(1, max_records)
        self.clock = clock
        self._lock = threading.RLock()

    def _load(self) -> List[Dict[str, Any]]:
        return [r for r in self.store.get(HISTORY_KEY, []) or [] if isinstance(r, dict) and r.get('id')]

    def _persist(self, records: List[Dict[str, Any]]) -> None:
        self.store.set(HISTORY_KEY, records[:self.max_records])

    def record_start(self, job: SyncJob, source_service: str, destination_service: str = 'apple') -> Dict[str, Any]:
        record = {
            'id': job.id,
            'status': 'in_progress',
            'startedAt': job.started_at.isoformat(),
            'completedAt': None,
            'sourceService': source_service,
            'sourcePlaylistId': job.source_ref,
            'destinationService': destination_service,
            'destinationPlaylistId': job.destination_ref,
            'trackCount': job.total,
            'results': None,
            'error': None,
        }
        with self._lock:
            records = [r for r in self._load() if r['id'] != job.id]
            records.insert(0, record)
            self._persist(records)
        return record

    def record_finish(self, job: SyncJob) -> Optional[Dict[str, Any]]:
        """Store the outcome of a finished job. Returns None when its start was never recorded."""
        stats = job.stats
        with self._lock:
            records = self._load()
            for record in records:
                if record['id'] == job.id:
                    break
            else:
                return None

            record['status'] = 'completed' if job.status == SyncStatus.COMPLETED else 'failed'
            record['completedAt'] = self.clock().isoformat()
            record['trackCount'] = job.total
            record['results'] = {
                'totalTracks': stats.total,
                'matched': stats.matched,
                'added': stats.added,
                'skippedDuplicate': stats.skipped_duplicate,
                'unavailable': stats.unavailable,
                'failed': stats.failed,
                'successRate': _success_rate(stats.matched, stats.total),
            }
            if job.status == SyncStatus.ERROR:
                record['error'] = {'message': job.error}
            self._persist(records)
        logger.info(f"Recorded {record['status']} transfer {job.id}")
        return record

    def list(self, limit: int = 50, source_service: Optional[str] = None,
             destination_service: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = self._load()
        if source_service:
            records = [r for r in records if r.get('sourceService') == source_service]
        if destination_service:
            records = [r for r in records if r.get('destinationService') == destination_service]
        return records[:max(0, limit)]

    def get(self, record_id: str) -> Dict[str, Any]:
        for record in self.list(limit=self.max_records):
            if record['id'] == record_id:
                return record
        raise KeyError(record_id)

    def delete(self, record_id: str) -> int:
        with self._lock:
            records = self._load()
            remaining = [r for r in records if r['id'] != record_id]
            self._persist(remaining)
        return len(records) - len(remaining)

    def statistics(self) -> Dict[str, Any]:
        records = self.list(limit=self.max_records)
        completed = [r for r in records if r['status'] == 'completed']
        stats: Dict[str, Any] = {
            'total': len(records),
            'completed': len(completed),
            'failed': sum(1 for r in records if r['status'] == 'failed'),
            'inProgress': sum(1 for r in records if r['status'] == 'in_progress'),
            'averageSuccessRate': 0.0,
            'totalTracksTransferred': 0,
            'byService': {},
        }
        if not completed:
            return stats

        rates = [(r.get('results') or {}).get('successRate', 0) for r in completed]
        stats['averageSuccessRate'] = round(sum(rates) / len(completed), 1)
        stats['totalTracksTransferred'] = sum((r.get('results') or {}).get('added', 0) for r in completed)

        by_service: Dict[str, Dict[str, Any]] = {}
        for record, rate in zip(completed, rates):
            key = f"{record.get('sourceService')}_to_{record.get('destinationService')}"
            entry = by_service.setdefault(key, {'count': 0, 'tracks': 0, 'successRate': 0.0})
            entry['count'] += 1
            entry['tracks'] += (record.get('results') or {}).get('added', 0)
            entry['successRate'] += rate
        for entry in by_service.values():
            entry['successRate'] = round(entry['successRate'] / entry['count'], 1)
        stats['byService'] = by_service
        return stats
