import time
import logging
import threading
import contextvars
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tunebridge.application.dedup import (
    DestinationIndex,
    build_index,
    contains,
    dedupe_tracks,
    source_track_key,
)
from tunebridge.application.export import FORMATS, ExportDocument, build_export
from tunebridge.application.history import TransferHistory
from tunebridge.application.matching import TrackMatcher
from tunebridge.application.transfer import BatchTransferEngine
from tunebridge.domain.entities import (
    Candidate,
    MatchResult,
    Playlist,
    SourceTrack,
    SyncJob,
    SyncStatus,
)
from tunebridge.domain.errors import (
    AuthorizationExpired,
    ConfigurationError,
    NotFound,
    PermanentFailure,
    RateLimited,
    SyncInProgress,
    TemporaryFailure,
)
from tunebridge.domain.normalization import composite_key, is_library_id
from tunebridge.domain.ports import DestinationCatalog, SourceCatalog
from tunebridge.crosscutting.logging import CorrelationContext, log_error
from tunebridge.crosscutting.reporting import SyncReport, TrackOutcome, TrackStatus


logger = logging.getLogger(__name__)

DEDUPED_SUFFIX = " (Deduped)"
WRITABLE_SERVICES = ('spotify', 'apple')
MAX_SPLIT_SIZE = 1000
NAME_SUFFIX_LIMIT = 1000
DEFAULT_DESCRIPTION = "Created by tunebridge"


def _metadata_key(track: SourceTrack) -> str:
    return composite_key(track.name, track.primary_artist, track.album, track.duration_ms)


class SyncOrchestrator:
    """Drives source fetch, destination indexing, matching and transfer for one sync at a time.

    Jobs are kept in memory for status queries; a non-blocking lock rejects a
    second concurrent sync with SyncInProgress.
    """

    def __init__(self,
                 source: Optional[SourceCatalog],
                 destination: DestinationCatalog,
                 matcher: Optional[TrackMatcher] = None,
                 transfer: Optional[BatchTransferEngine] = None,
                 channel=None,
                 match_batch_size: int = 25,
                 resolve_service: Optional[Callable[[str], Any]] = None,
                 storefront: str = 'us',
                 history: Optional[TransferHistory] = None):
        """Initialize orchestrator.

        Args:
            source: Default source catalog
            destination: Destination catalog
            matcher: Track matcher (built with the channel when omitted)
            transfer: Batch transfer engine (built for `destination` when omitted)
            channel: Broadcast channel for progress, log and finish events
            match_batch_size: Tracks matched in parallel per batch
            resolve_service: Returns the provider for a service name, used by
                playlist features and by syncs naming another source service
            storefront: Apple Music storefront used for exported URLs
            history: Transfer history every sync is recorded in
        """
        self.source = source
        self.destination = destination
        self.channel = channel
        self.matcher = matcher or TrackMatcher(channel=channel)
        self.transfer = transfer or BatchTransferEngine(destination, channel=channel)
        self.match_batch_size = max(1, match_batch_size)
        self.resolve_service = resolve_service
        self.storefront = storefront
        self.history = history
        self._sync_lock = threading.Lock()
        self._jobs: Dict[str, SyncJob] = {}
        self._jobs_lock = threading.Lock()

    # Jobs

    def _new_job(self, source_ref: str, destination_ref: str) -> SyncJob:
        job = SyncJob(id=f"sync_{int(time.time() * 1000)}", source_ref=source_ref, destination_ref=destination_ref)
        with self._jobs_lock:
            while job.id in self._jobs:
                job.id = f"{job.id}_1"
            self._jobs[job.id] = job
        return job

    def get_job_status(self, job_id: str) -> SyncJob:
        with self._jobs_lock:
            return self._jobs[job_id]

    def get_report(self, job_id: str) -> SyncReport:
        return SyncReport.from_job(self.get_job_status(job_id))

    @property
    def is_busy(self) -> bool:
        return self._sync_lock.locked()

    # Sync

    def start_sync(self, source_ref: str, destination_ref: str,
                   options: Optional[Dict[str, Any]] = None) -> str:
        """Start a sync on a worker thread and return its job id.

        Raises:
            ConfigurationError: If a playlist reference is missing
            SyncInProgress: If another sync holds the lock
        """
        if not source_ref or not destination_ref:
            raise ConfigurationError("Both source and destination playlist ids are required")
        source = self._source_for(options)
        source_service = self._source_service(options)
        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgress("A sync is already in progress")
        try:
            job = self._new_job(source_ref, destination_ref)
            thread = threading.Thread(target=self._run_and_release,
                                      args=(source_ref, destination_ref, job, source, source_service),
                                      name=f"sync-{job.id}", daemon=True)
            thread.start()
        except Exception:
            self._sync_lock.release()
            raise
        logger.info(f"Started sync job {job.id}: {source_ref} -> {destination_ref}")
        return job.id

    def _run_and_release(self, source_ref: str, destination_ref: str, job: SyncJob, source,
                         source_service: str) -> None:
        try:
            self.run_sync(source_ref, destination_ref, job=job, source=source, source_service=source_service)
        finally:
            self._sync_lock.release()

    def run_exclusive(self, source_ref: str, destination_ref: str,
                      options: Optional[Dict[str, Any]] = None) -> SyncJob:
        """Blocking sync that takes the global lock, used by scheduled runs and the CLI."""
        source = self._source_for(options)
        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgress("A sync is already in progress")
        try:
            return self.run_sync(source_ref, destination_ref, source=source,
                                 source_service=self._source_service(options))
        finally:
            self._sync_lock.release()

    @staticmethod
    def _source_service(options: Optional[Dict[str, Any]]) -> str:
        return str((options or {}).get('source_service') or 'spotify').lower()

    def _source_for(self, options: Optional[Dict[str, Any]]):
        service = (options or {}).get('source_service')
        if service:
            return self._provider(service)
        if self.source is not None:
            return self.source
        return self._provider('spotify')

    def run_sync(self, source_ref: str, destination_ref: str, job: Optional[SyncJob] = None,
                 source: Optional[SourceCatalog] = None, source_service: str = 'spotify') -> SyncJob:
        """Run one sync to completion on the calling thread.

        Args:
            source_ref: Source playlist id
            destination_ref: Destination playlist id
            job: Job to drive; a new one is registered when omitted
            source: Source catalog overriding the default one
            source_service: Name of the source service, as recorded in the history

        Returns:
            The job in a terminal state. Errors never escape; they turn the job to ERROR.
        """
        job = job or self._new_job(source_ref, destination_ref)
        with CorrelationContext(job_id=job.id, playlist_id=source_ref, stage='sync'):
            self._record_history(job, source_service)
            try:
                source = source or self._source_for(None)
                job.status = SyncStatus.RUNNING
                self._progress(job, 0, 0, 'Fetching source tracks')
                tracks = source.list_playlist_tracks(source_ref)
                job.total = job.stats.total = len(tracks)
                logger.info(f"Fetched {len(tracks)} source tracks for job {job.id}")

                self._progress(job, 0, job.total, 'Reading destination playlist')
                index = build_index(self.destination, destination_ref)

                results = self._match_all(job, tracks)
                self._transfer(job, destination_ref, results, index)

                job.status = SyncStatus.COMPLETED
                job.step = 'Completed'
                stats = job.stats
                message = (f"Transfer complete: {stats.added} added, {stats.skipped_duplicate} already present, "
                           f"{stats.unavailable} unavailable, {stats.failed} failed")
                logger.info(message)
                if self.channel is not None:
                    self.channel.finish('success', found=stats.matched, not_found=stats.unavailable,
                                        skipped=stats.skipped_duplicate, message=message, jobId=job.id,
                                        added=stats.added, failed=stats.failed)
            except Exception as e:
                job.status = SyncStatus.ERROR
                job.error = str(e) or type(e).__name__
                log_error(logger, f"Sync job {job.id} failed", e, job_id=job.id)
                if self.channel is not None:
                    self.channel.finish('error', found=job.stats.matched, not_found=job.stats.unavailable,
                                        skipped=job.stats.skipped_duplicate, message=f"Sync failed: {job.error}",
                                        jobId=job.id)
            finally:
                job.finished_at = datetime.now()
                self._record_history(job)
        return job

    def _record_history(self, job: SyncJob, source_service: Optional[str] = None) -> None:
        # A failed history write never changes the job outcome
        if self.history is None:
            return
        try:
            if source_service is not None:
                self.history.record_start(job, source_service)
            else:
                self.history.record_finish(job)
        except Exception as e:
            log_error(logger, f"Could not record transfer history for job {job.id}", e, job_id=job.id)

    def _progress(self, job: SyncJob, current: int, total: int, step: str, track_info=None) -> None:
        job.current, job.step = current, step
        if self.channel is not None:
            self.channel.progress(current, total, step, status='running', track_info=track_info, jobId=job.id)

    def _match_all(self, job: SyncJob, tracks: List[SourceTrack]) -> List[MatchResult]:
        """Match tracks batch by batch; each batch runs in parallel and is awaited before the next."""
        results: List[MatchResult] = []
        total = len(tracks)
        size = self.match_batch_size
        with ThreadPoolExecutor(max_workers=size, thread_name_prefix='match') as pool:
            for start in range(0, total, size):
                batch = tracks[start:start + size]
                # Each task runs in its own copy of the caller's context so log correlation survives.
                futures = [pool.submit(contextvars.copy_context().run, self._match_one, track)
                           for track in batch]
                batch_results = [f.result() for f in futures]
                results.extend(batch_results)

                last = batch_results[-1].source_track
                job.stats.matched = sum(1 for r in results if r.matched)
                self._progress(job, len(results), total, f"Matched {len(results)}/{total}",
                               track_info={'name': last.name, 'artist': last.primary_artist})
        return results

    def _match_one(self, track: SourceTrack) -> MatchResult:
        """Match one track; an unexpected failure marks only that track unavailable."""
        try:
            return self.matcher.match(track, self.destination)
        except AuthorizationExpired:
            raise
        except Exception as e:
            log_error(logger, f"Matching failed for '{track.name}'", e, position=track.position)
            if self.channel is not None:
                self.channel.log(f'Matching failed for "{track.name}": {e}', level='error',
                                 reason='match_error', position=track.position)
            return MatchResult(source_track=track, candidate=None, reason='match_error')

    def _transfer(self, job: SyncJob, destination_ref: str, results: List[MatchResult],
                  index: DestinationIndex) -> None:
        stats = job.stats
        outcomes: List[TrackOutcome] = []
        pending: List[TrackOutcome] = []
        to_add: List[str] = []
        details: Dict[str, Candidate] = {}

        for result in results:
            track = result.source_track
            outcome = TrackOutcome(position=track.position, name=track.name, artist=track.primary_artist,
                                   status=TrackStatus.UNAVAILABLE, tier=result.tier.value,
                                   confidence=result.confidence.value if result.matched else None,
                                   score=result.score)
            outcomes.append(outcome)
            if not result.matched:
                stats.unavailable += 1
                continue

            candidate = result.candidate
            outcome.candidate_id = candidate.catalog_id
            if contains(index, candidate):
                stats.skipped_duplicate += 1
                outcome.status = TrackStatus.SKIPPED_DUPLICATE
                logger.debug(f"Skipping '{track.name}': already in destination")
                continue

            index.add(candidate)
            to_add.append(str(candidate.catalog_id))
            details[str(candidate.catalog_id)] = candidate
            pending.append(outcome)

        stats.matched = sum(1 for r in results if r.matched)
        self._progress(job, job.total, job.total, f"Adding {len(to_add)} tracks")

        if to_add:
            with CorrelationContext(stage='transfer'):
                add_result = self.transfer.add_tracks(destination_ref, to_add, details=details)
            failed_ids = set(add_result.failed_ids)
            stats.added = add_result.added
            stats.failed = add_result.failed
        else:
            failed_ids = set()

        for outcome in pending:
            outcome.status = TrackStatus.FAILED if outcome.candidate_id in failed_ids else TrackStatus.ADDED
        job.track_outcomes = outcomes

    # Single-playlist features

    def _provider(self, service: str):
        if self.resolve_service is None:
            raise ConfigurationError(f"Service '{service}' is not available")
        provider = self.resolve_service(str(service).lower())
        if provider is None:
            raise ConfigurationError(f"Unknown service: {service}")
        return provider

    def dedupe_playlist(self, service: str, playlist_ref: str,
                        playlist_name: Optional[str] = None) -> Dict[str, Any]:
        """Copy a playlist into "<name> (Deduped)" keeping the first occurrence of each track.

        Spotify tracks are keyed by ISRC when present, Apple Music tracks by
        their metadata fingerprint.

        Returns:
            Dictionary with original_count, new_count, new_playlist_id and new_playlist_name
        """
        if not playlist_ref:
            raise ConfigurationError("playlist id is required")
        service = str(service).lower()
        provider = self._provider(service)

        with CorrelationContext(playlist_id=playlist_ref, stage='dedupe'):
            tracks = provider.list_playlist_tracks(playlist_ref)
            name = playlist_name or provider.get_playlist_name(playlist_ref) or 'Playlist'
            key = source_track_key if service == 'spotify' else _metadata_key
            kept, removed = dedupe_tracks(tracks, key)

            new_name = f"{name}{DEDUPED_SUFFIX}"
            created = provider.create_playlist(new_name, f"Deduplicated copy of {name}")
            ids = [str(t.source_id) for t in kept if t.source_id]
            if ids:
                self._insert_copy(service, provider, created.id, ids)
            logger.info(f"Deduped '{name}': {len(tracks)} -> {len(kept)} tracks ({removed} removed)")

        return {
            'original_count': len(tracks),
            'new_count': len(kept),
            'new_playlist_id': created.id,
            'new_playlist_name': new_name,
        }

    def _insert_copy(self, service: str, provider, playlist_id: str, ids: List[str]) -> None:
        if service != 'apple':
            provider.add_to_playlist(playlist_id, ids)
            return

        # Apple playlists mix catalog songs and library-only songs; insert consecutive runs of one kind in order.
        engine = BatchTransferEngine(provider, channel=self.channel, settings=self.transfer.settings)
        runs: List[List[str]] = []
        for item_id in ids:
            if runs and is_library_id(runs[-1][0]) == is_library_id(item_id):
                runs[-1].append(item_id)
            else:
                runs.append([item_id])
        for run in runs:
            if is_library_id(run[0]):
                provider.add_to_playlist(playlist_id, run, item_type='library-songs')
            else:
                engine.add_tracks(playlist_id, run)

    def export_playlist(self, service: str, playlist_ref: str, fmt: str = 'csv') -> ExportDocument:
        if not playlist_ref:
            raise ConfigurationError("playlist id is required")
        if str(fmt or '').lower() not in FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")
        provider = self._provider(service)
        with CorrelationContext(playlist_id=playlist_ref, stage='export'):
            tracks = provider.list_playlist_tracks(playlist_ref)
            document = build_export(fmt, tracks, str(service).lower(), storefront=self.storefront)
            logger.info(f"Exported {len(tracks)} tracks from {service} playlist {playlist_ref} as {fmt}")
        return document

    # Playlists

    def _writable_provider(self, service: str):
        service = str(service or '').lower()
        if service not in WRITABLE_SERVICES:
            raise ConfigurationError(f"Playlists cannot be written on '{service}'")
        return service, self._provider(service)

    def list_playlists(self, service: str) -> List[Playlist]:
        playlists = self._provider(service).list_playlists()
        logger.info(f"Listed {len(playlists)} {service} playlists")
        return playlists

    def unique_playlist_name(self, provider, name: str) -> str:
        """Return `name`, or `name N` with the smallest N not taken by an existing playlist.

        When the existing names cannot be read, `name` is used as is.
        """
        base = str(name).strip()
        try:
            taken = {p.name for p in provider.list_playlists()}
        except (RateLimited, TemporaryFailure, PermanentFailure, NotFound) as e:
            logger.warning(f"Could not list playlists to pick a unique name: {e}")
            return base
        if base not in taken:
            return base
        for counter in range(1, NAME_SUFFIX_LIMIT + 1):
            candidate = f"{base} {counter}"
            if candidate not in taken:
                return candidate
        return f"{base} {NAME_SUFFIX_LIMIT + 1}"

    def create_playlist(self, service: str, name: str, description: str = '') -> Playlist:
        if not name or not str(name).strip():
            raise ConfigurationError("Playlist name is required")
        service, provider = self._writable_provider(service)
        playlist = provider.create_playlist(self.unique_playlist_name(provider, name),
                                            description or DEFAULT_DESCRIPTION)
        logger.info(f"Created {service} playlist '{playlist.name}' ({playlist.id})")
        return playlist

    def join_playlists(self, service_a: str, playlist_a: str, service_b: Optional[str], playlist_b: str,
                       new_name: str) -> Dict[str, Any]:
        """Create `new_name` on service A holding playlist A followed by playlist B.

        Tracks of the same service are copied by id, keeping the first occurrence
        of each. A playlist B on another service is matched into the new
        playlist by a regular sync, so service A must be Apple Music then.

        Returns:
            Dictionary with destination_playlist_id, destination_playlist_name and
            track_count; a cross-service join adds sync_job_id and sync_status
        """
        service_a = str(service_a or '').lower()
        service_b = str(service_b or service_a).lower()
        if not service_a or not playlist_a or not playlist_b or not new_name:
            raise ConfigurationError("serviceA, playlistA, playlistB and newPlaylistName are required")
        service_a, provider_a = self._writable_provider(service_a)
        cross_service = service_b != service_a
        if cross_service and service_a != 'apple':
            raise ConfigurationError(f"Cannot match {service_b} tracks into a {service_a} playlist")
        if cross_service and self.is_busy:
            raise SyncInProgress("A sync is already in progress")

        with CorrelationContext(playlist_id=playlist_a, stage='join'):
            created = self.create_playlist(service_a, new_name)
            tracks = provider_a.list_playlist_tracks(playlist_a)
            if not cross_service:
                tracks = tracks + provider_a.list_playlist_tracks(playlist_b)
            ids, removed = dedupe_tracks([str(t.source_id) for t in tracks if t.source_id], key=lambda i: i)
            if ids:
                self._insert_copy(service_a, provider_a, created.id, ids)
            logger.info(f"Joined into '{created.name}': {len(ids)} tracks copied ({removed} repeated ids skipped)")

        result = {
            'destination_playlist_id': created.id,
            'destination_playlist_name': created.name,
            'track_count': len(ids),
        }
        if cross_service:
            job = self.run_exclusive(playlist_b, created.id, {'source_service': service_b})
            result['sync_job_id'] = job.id
            result['sync_status'] = job.status.value
            result['track_count'] += job.stats.added
        return result

    def split_playlist(self, service: str, playlist_ref: str, split_size: Any = 50,
                       base_name: Optional[str] = None) -> Dict[str, Any]:
        """Copy a playlist into consecutive parts named "<base_name> 1", "<base_name> 2", ...

        Args:
            service: Service owning the playlist; the parts are created there too
            playlist_ref: Playlist to split
            split_size: Tracks per part, clamped to 1..1000
            base_name: Name prefix of the parts

        Returns:
            Dictionary with original_count and new_playlists (id, name, trackCount per part)
        """
        if not playlist_ref or not base_name:
            raise ConfigurationError("service, playlist and baseName are required")
        size = max(1, min(MAX_SPLIT_SIZE, int(split_size or 50)))
        service, provider = self._writable_provider(service)

        parts: List[Dict[str, Any]] = []
        with CorrelationContext(playlist_id=playlist_ref, stage='split'):
            ids = [str(t.source_id) for t in provider.list_playlist_tracks(playlist_ref) if t.source_id]
            for number, start in enumerate(range(0, len(ids), size), 1):
                chunk = ids[start:start + size]
                created = self.create_playlist(service, f"{base_name} {number}")
                self._insert_copy(service, provider, created.id, chunk)
                parts.append({'id': created.id, 'name': created.name, 'trackCount': len(chunk)})
            logger.info(f"Split {service} playlist {playlist_ref} ({len(ids)} tracks) into {len(parts)} parts")

        return {'original_count': len(ids), 'new_playlists': parts}
