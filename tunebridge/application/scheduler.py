import re
import time
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from tunebridge.domain.entities import ScheduledJob, SyncStatus
from tunebridge.crosscutting.logging import CorrelationContext, log_error

logger = logging.getLogger(__name__)

JOBS_KEY = 'autoSyncJobs'
SERVICES = ('spotify', 'apple')
DEFAULT_TIME_OF_DAY = '16:00'
FALLBACK_TIME_OF_DAY = (4, 0)

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{1,2})\s*$")

Runner = Callable[[str, str, str, str], Any]


def _parse_time_of_day(time_of_day: Optional[str]):
    match = _TIME_PATTERN.match(str(time_of_day or ''))
    if not match:
        return FALLBACK_TIME_OF_DAY
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return FALLBACK_TIME_OF_DAY
    return hour, minute


def compute_next_run_at(time_of_day: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Next local occurrence of HH:MM strictly after `now`; malformed input means 04:00."""
    now = now or datetime.now()
    hour, minute = _parse_time_of_day(time_of_day)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp into local naive time; unreadable values count as missing."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Ignoring unreadable timestamp {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class ScheduledJobStore:
    """CRUD for scheduled jobs persisted under one key of a key/value store."""

    def __init__(self, store, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock
        self._lock = threading.RLock()

    def _load(self) -> List[ScheduledJob]:
        return [ScheduledJob.from_json(raw) for raw in self.store.get(JOBS_KEY, []) or [] if raw and raw.get('id')]

    def _persist(self, jobs: List[ScheduledJob]) -> None:
        self.store.set(JOBS_KEY, [j.to_json() for j in jobs])

    def list(self) -> List[ScheduledJob]:
        with self._lock:
            return self._load()

    def get(self, job_id: str) -> ScheduledJob:
        for job in self.list():
            if job.id == job_id:
                return job
        raise KeyError(job_id)

    @staticmethod
    def _validate(job: ScheduledJob) -> None:
        if job.source_service not in SERVICES or job.destination_service not in SERVICES \
                or job.source_service == job.destination_service:
            raise ValueError("sourceService and destinationService must be different and one of spotify/apple.")
        if job.mode == 'combine' and not job.destination_playlist_id:
            raise ValueError("Destination playlist or createNewDestination.name required for combine mode.")

    @staticmethod
    def _derive_source_ids(job: ScheduledJob) -> None:
        if job.mode == 'map' and not job.source_playlist_ids and job.mappings:
            job.source_playlist_ids = [m.get('sourcePlaylistId') for m in job.mappings if m.get('sourcePlaylistId')]

    def create(self, payload: Dict[str, Any],
               create_playlist: Optional[Callable[[str, str], str]] = None) -> ScheduledJob:
        """Validate and persist a new job.

        Args:
            payload: Job fields in their JSON (camelCase) form
            create_playlist: Called as (service, name) -> playlist id when a combine job
                asks for a new destination via `createNewDestination.name`

        Returns:
            The stored job with `nextRunAt` computed
        """
        now = self.clock()
        job = ScheduledJob(
            id=f"job_{int(time.time() * 1000)}",
            name=str(payload.get('name') or 'Auto Sync'),
            mode='combine' if payload.get('mode') == 'combine' else 'map',
            source_service=str(payload.get('sourceService') or '').lower(),
            destination_service=str(payload.get('destinationService') or '').lower(),
            source_playlist_ids=list(payload.get('sourcePlaylistIds') or []),
            destination_playlist_id=payload.get('destinationPlaylistId') or None,
            mappings=[dict(m) for m in payload.get('mappings') or [] if isinstance(m, dict)],
            time_of_day=str(payload.get('timeOfDay') or DEFAULT_TIME_OF_DAY),
            storefront=str(payload.get('storefront') or 'us'),
            enabled=payload.get('enabled') is not False,
            created_at=now.isoformat(),
        )

        new_destination = (payload.get('createNewDestination') or {}).get('name')
        if job.mode == 'combine' and not job.destination_playlist_id and new_destination and create_playlist:
            # Validate services before creating anything remotely
            if job.source_service in SERVICES and job.destination_service in SERVICES \
                    and job.source_service != job.destination_service:
                job.destination_playlist_id = create_playlist(job.destination_service, new_destination)

        self._validate(job)
        self._derive_source_ids(job)
        job.next_run_at = compute_next_run_at(job.time_of_day, now).isoformat()

        with self._lock:
            jobs = self._load()
            while any(j.id == job.id for j in jobs):
                job.id = f"{job.id}_1"
            jobs.append(job)
            self._persist(jobs)
        logger.info(f"Created auto-sync job {job.id} ({job.mode}, {job.source_service} -> {job.destination_service})")
        return job

    def update(self, job_id: str, payload: Dict[str, Any]) -> ScheduledJob:
        with self._lock:
            jobs = self._load()
            for index, job in enumerate(jobs):
                if job.id == job_id:
                    break
            else:
                raise KeyError(job_id)

            if isinstance(payload.get('enabled'), bool):
                job.enabled = payload['enabled']
            if isinstance(payload.get('name'), str):
                job.name = payload['name']
            if isinstance(payload.get('timeOfDay'), str):
                job.time_of_day = payload['timeOfDay']
            if payload.get('mode') in ('map', 'combine'):
                job.mode = payload['mode']
            if isinstance(payload.get('sourceService'), str):
                job.source_service = payload['sourceService'].lower()
            if isinstance(payload.get('destinationService'), str):
                job.destination_service = payload['destinationService'].lower()
            if isinstance(payload.get('sourcePlaylistIds'), list):
                job.source_playlist_ids = list(payload['sourcePlaylistIds'])
            if 'destinationPlaylistId' in payload and (payload['destinationPlaylistId'] is None
                                                       or isinstance(payload['destinationPlaylistId'], str)):
                job.destination_playlist_id = payload['destinationPlaylistId']
            if isinstance(payload.get('mappings'), list):
                job.mappings = [dict(m) for m in payload['mappings'] if isinstance(m, dict)]
                if not payload.get('sourcePlaylistIds'):
                    job.source_playlist_ids = []
            if isinstance(payload.get('storefront'), str):
                job.storefront = payload['storefront']

            self._validate(job)
            self._derive_source_ids(job)
            job.next_run_at = compute_next_run_at(job.time_of_day, self.clock()).isoformat()
            jobs[index] = job
            self._persist(jobs)
            return job

    def delete(self, job_id: str) -> int:
        with self._lock:
            jobs = self._load()
            remaining = [j for j in jobs if j.id != job_id]
            self._persist(remaining)
            return len(jobs) - len(remaining)

    def _modify(self, job_id: str, change: Callable[[ScheduledJob], None]) -> Optional[ScheduledJob]:
        # Changes the stored copy, not the caller's snapshot
        with self._lock:
            jobs = self._load()
            for job in jobs:
                if job.id == job_id:
                    change(job)
                    self._persist(jobs)
                    return job
        return None

    def reschedule(self, job_id: str, now: Optional[datetime] = None,
                   last_run_at: Optional[str] = None) -> Optional[ScheduledJob]:
        """Set `next_run_at` from the stored time of day, and `last_run_at` when given.

        Only these two fields are written. Returns None if the job was deleted meanwhile.
        """
        now = now or self.clock()

        def change(job: ScheduledJob) -> None:
            if last_run_at is not None:
                job.last_run_at = last_run_at
            job.next_run_at = compute_next_run_at(job.time_of_day, now).isoformat()

        return self._modify(job_id, change)

    def assign_destination(self, job_id: str, source_id: str, destination_id: str) -> Optional[ScheduledJob]:
        """Record a destination created for a mapping that had none."""
        def change(job: ScheduledJob) -> None:
            for mapping in job.mappings:
                if mapping.get('sourcePlaylistId') == source_id \
                        and mapping.get('destPlaylistId') in (None, '', 'none'):
                    mapping['destPlaylistId'] = destination_id

        return self._modify(job_id, change)


class AutoSyncScheduler:
    """Periodic runner for scheduled jobs.

    Per job: pending -> due -> running -> pending, or running -> error -> pending.
    `next_run_at` is recomputed after every run whatever its outcome.
    """

    def __init__(self, jobs: ScheduledJobStore, runner: Runner, channel=None,
                 interval: float = 60.0,
                 clock: Callable[[], datetime] = datetime.now,
                 create_playlist: Optional[Callable[[str, str], str]] = None):
        """Initialize scheduler.

        Args:
            jobs: Job store
            runner: Called as (source_service, destination_service, source_id, destination_id)
                for each playlist pair; returns the finished SyncJob
            channel: Broadcast channel for finish events
            interval: Maximum seconds between two ticks
            clock: Returns the current local time
            create_playlist: Called as (service, name) -> playlist id for map entries without a destination
        """
        self.jobs = jobs
        self.runner = runner
        self.channel = channel
        self.interval = interval
        self.clock = clock
        self.create_playlist = create_playlist
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running: set = set()
        self._running_lock = threading.Lock()

    def due_jobs(self, now: datetime) -> List[ScheduledJob]:
        due = []
        for job in self.jobs.list():
            if not job.enabled:
                continue
            next_run = parse_timestamp(job.next_run_at)
            if next_run is None:
                self.jobs.reschedule(job.id, now)
                continue
            if next_run <= now:
                due.append(job)
        return due

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Run every enabled job whose next run time has passed. Returns the ids run."""
        now = now or self.clock()
        ran = []
        for job in self.due_jobs(now):
            self.execute(job)
            ran.append(job.id)
        return ran

    def run_now(self, job_id: str) -> threading.Thread:
        """Trigger a job immediately on a worker thread. Raises KeyError for unknown ids."""
        job = self.jobs.get(job_id)
        thread = threading.Thread(target=self.execute, args=(job,), name=f"auto-sync-{job_id}", daemon=True)
        thread.start()
        return thread

    def execute(self, job: ScheduledJob) -> bool:
        """Run one job and reschedule it. Returns True on success."""
        with self._running_lock:
            if job.id in self._running:
                logger.warning(f"Auto-sync job {job.id} is already running, skipping")
                return False
            self._running.add(job.id)

        label = job.name or job.id
        success = False
        last_run_at = None
        try:
            with CorrelationContext(stage='auto_sync'):
                logger.info(f"Auto Sync running: {label}")
                if self.channel is not None:
                    self.channel.progress(0, 0, f"Auto Sync running: {label}", status='running')
                self._run_pairs(job)
            last_run_at = self.clock().isoformat()
            success = True
        except Exception as e:
            log_error(logger, f"Auto Sync failed: {label}", e, job_id=job.id)
            if self.channel is not None:
                self.channel.finish('error', message=f"Auto Sync failed: {label}: {e}", jobId=job.id)
        finally:
            try:
                self.jobs.reschedule(job.id, self.clock(), last_run_at=last_run_at)
            finally:
                with self._running_lock:
                    self._running.discard(job.id)

        if success and self.channel is not None:
            self.channel.finish('success', message=f"Auto Sync finished: {label}", jobId=job.id)
        return success

    def _run_pairs(self, job: ScheduledJob) -> None:
        if job.mode == 'combine':
            if not job.destination_playlist_id:
                raise ValueError(f"Job {job.id} has no destination playlist")
            for source_id in job.source_playlist_ids:
                self._run_one(job, source_id, job.destination_playlist_id)
            return

        for mapping in job.mappings:
            destination_id = mapping.get('destPlaylistId')
            if not destination_id or destination_id == 'none':
                if self.create_playlist is None:
                    raise ValueError(f"Mapping for {mapping.get('sourcePlaylistId')} has no destination playlist")
                name = str(mapping.get('createNewName') or 'Auto Sync').strip()
                destination_id = self.create_playlist(job.destination_service, name)
                mapping['destPlaylistId'] = destination_id
                self.jobs.assign_destination(job.id, mapping.get('sourcePlaylistId'), destination_id)
            self._run_one(job, mapping.get('sourcePlaylistId'), destination_id)

    def _run_one(self, job: ScheduledJob, source_id: str, destination_id: str) -> None:
        result = self.runner(job.source_service, job.destination_service, source_id, destination_id)
        if getattr(result, 'status', None) == SyncStatus.ERROR:
            raise RuntimeError(getattr(result, 'error', None) or f"Sync {source_id} -> {destination_id} failed")

    def seconds_until_next_due(self, now: datetime) -> float:
        wait = float(self.interval)
        for job in self.jobs.list():
            next_run = parse_timestamp(job.next_run_at) if job.enabled else None
            if next_run is not None:
                wait = min(wait, max(0.0, (next_run - now).total_seconds()))
        return wait

    def _loop(self) -> None:
        while not self._stop.is_set():
            wait = float(self.interval)
            try:
                self.tick()
                wait = self.seconds_until_next_due(self.clock())
            except Exception as e:
                log_error(logger, "Auto-sync tick failed", e)
            if self._stop.wait(wait):
                break

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='auto-sync-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Auto-sync scheduler started (interval {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
