import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from tunebridge.domain.entities import AddResult, Candidate
from tunebridge.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure
from tunebridge.domain.normalization import album_relation, duration_within, normalize_string
from tunebridge.domain.ports import DestinationCatalog
from tunebridge.crosscutting.logging import log_error, log_with_fields


logger = logging.getLogger(__name__)

_REMOTE_ERRORS = (RateLimited, TemporaryFailure, PermanentFailure, NotFound)


@dataclass(frozen=True)
class TransferSettings:
    batch_size: int = 25
    library_index_wait: float = 2.0
    resolve_attempts: int = 5
    resolve_wait: float = 1.0
    deep_scan_limit: int = 200
    accept_score: int = 10


@dataclass
class TransferOutcome:
    """What one strategy did with the ids it was given.

    Ids in neither list are handed to `next_strategy`.
    """

    added_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)
    next_strategy: Optional[str] = None


class TransferContext:
    """Collaborators shared by the strategies of one `add_tracks` call."""

    def __init__(self, destination: DestinationCatalog, settings: TransferSettings,
                 channel=None, details: Optional[Dict[str, Candidate]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.destination = destination
        self.settings = settings
        self.channel = channel
        self.details: Dict[str, Candidate] = dict(details or {})
        self.sleep = sleep
        self._recent_library: Optional[List[Candidate]] = None

    def emit(self, message: str, level: str = 'info', **fields) -> None:
        log_with_fields(logger, level, message, fields)
        if self.channel is not None:
            self.channel.log(message, level=level, **fields)

    def recent_library(self) -> List[Candidate]:
        if self._recent_library is None:
            try:
                self._recent_library = list(self.destination.recent_library_songs(self.settings.deep_scan_limit))
            except _REMOTE_ERRORS as e:
                log_error(logger, "Deep scan of recent library songs failed", e)
                self._recent_library = []
        return self._recent_library


class PlaylistInsertStrategy:
    """One insert request for the whole batch."""

    name = 'playlist_insert'

    def run(self, ctx: TransferContext, playlist_id: str, ids: List[str]) -> TransferOutcome:
        ctx.emit(f"Adding {len(ids)} tracks to playlist {playlist_id}", ids=ids, outcome='attempt', strategy=self.name)
        try:
            ctx.destination.add_to_playlist(playlist_id, ids, item_type='songs')
        except NotFound as e:
            ctx.emit(f"Playlist endpoint returned not found ({e}), falling back to library add for {len(ids)} items",
                     level='warning', ids=ids, outcome='fallback', strategy=LibraryFallbackStrategy.name)
            return TransferOutcome(next_strategy=LibraryFallbackStrategy.name)
        except _REMOTE_ERRORS as e:
            ctx.emit(f"Batch add failed (status {getattr(e, 'status', None) or 'n/a'}), "
                     f"falling back to single-track adds for {len(ids)} items",
                     level='warning', ids=ids, outcome='fallback', strategy=SingleInsertStrategy.name)
            return TransferOutcome(next_strategy=SingleInsertStrategy.name)
        ctx.emit(f"Added {len(ids)} tracks to playlist {playlist_id}", ids=ids, outcome='added', strategy=self.name)
        return TransferOutcome(added_ids=list(ids))


class SingleInsertStrategy:
    """Insert ids one by one so a bad id cannot block the rest of its batch."""

    name = 'single_insert'

    def run(self, ctx: TransferContext, playlist_id: str, ids: List[str]) -> TransferOutcome:
        outcome = TransferOutcome()
        for track_id in ids:
            try:
                ctx.destination.add_to_playlist(playlist_id, [track_id], item_type='songs')
            except _REMOTE_ERRORS as e:
                outcome.failed_ids.append(track_id)
                ctx.emit(f"Failed to add track {track_id} (status {getattr(e, 'status', None) or 'n/a'})",
                         level='error', ids=[track_id], outcome='failed', strategy=self.name)
                continue
            outcome.added_ids.append(track_id)
            ctx.emit(f"Added track {track_id}", ids=[track_id], outcome='added', strategy=self.name)
        return outcome


class LibraryFallbackStrategy:
    """Library add, then resolve each song to its library id and insert that instead."""

    name = 'library_fallback'

    def run(self, ctx: TransferContext, playlist_id: str, ids: List[str]) -> TransferOutcome:
        outcome = TransferOutcome()

        for catalog_id in ids:
            try:
                ctx.destination.add_to_library([catalog_id])
                ctx.emit(f"Added {catalog_id} to library", ids=[catalog_id], outcome='library_added', strategy=self.name)
            except _REMOTE_ERRORS as e:
                ctx.emit(f"Library add failed for {catalog_id}: {e}", level='warning',
                         ids=[catalog_id], outcome='library_add_failed', strategy=self.name)

        if ctx.settings.library_index_wait > 0:
            ctx.sleep(ctx.settings.library_index_wait)

        self._load_missing_details(ctx, ids)

        resolved: Dict[str, str] = {}
        for catalog_id in ids:
            meta = ctx.details.get(catalog_id)
            library_id = self.resolve(ctx, meta) if meta is not None else None
            if library_id:
                resolved[catalog_id] = library_id
                ctx.emit(f"Resolved library song for {meta.name or catalog_id}",
                         ids=[catalog_id], outcome='resolved', strategy=self.name, library_id=library_id)
            else:
                outcome.failed_ids.append(catalog_id)
                name = meta.name if meta is not None and meta.name else catalog_id
                ctx.emit(f"Could not resolve library song for {name}", level='error',
                         ids=[catalog_id], outcome='failed', strategy=self.name)

        if not resolved:
            return outcome

        library_ids = list(resolved.values())
        try:
            ctx.destination.add_to_playlist(playlist_id, library_ids, item_type='library-songs')
        except _REMOTE_ERRORS as e:
            outcome.failed_ids.extend(resolved.keys())
            ctx.emit(f"Library songs insert failed: {e}", level='error',
                     ids=list(resolved.keys()), outcome='failed', strategy=self.name)
            return outcome

        outcome.added_ids.extend(resolved.keys())
        ctx.emit(f"Added {len(library_ids)} library songs to playlist {playlist_id}",
                 ids=list(resolved.keys()), outcome='added', strategy=self.name)
        return outcome

    def _load_missing_details(self, ctx: TransferContext, ids: List[str]) -> None:
        missing = [i for i in ids if i not in ctx.details]
        if not missing:
            return
        try:
            ctx.details.update(ctx.destination.get_catalog_songs(missing))
        except _REMOTE_ERRORS as e:
            log_error(logger, "Catalog metadata fetch failed during library fallback", e, ids=missing)

    def resolve(self, ctx: TransferContext, meta: Candidate) -> Optional[str]:
        """Find the library id of a song just added to the library.

        Library search is retried with exponential waits since indexing lags;
        a deep scan of the most recent library songs is the last resort.
        """
        term = ' '.join(p for p in (normalize_string(meta.name), normalize_string(meta.artist_name)) if p)
        settings = ctx.settings
        if term:
            for attempt in range(settings.resolve_attempts):
                try:
                    hits = ctx.destination.library_search(term, limit=10)
                except _REMOTE_ERRORS as e:
                    log_error(logger, "Library search failed", e, term=term, attempt=attempt + 1)
                    hits = []
                best = self._best(hits, meta, self._search_score, settings.accept_score)
                if best is not None:
                    return best.library_id or best.catalog_id
                if attempt < settings.resolve_attempts - 1 and settings.resolve_wait > 0:
                    ctx.sleep(settings.resolve_wait * (2 ** attempt))

        best = self._best(ctx.recent_library(), meta, self._deep_scan_score, settings.accept_score)
        if best is not None:
            return best.library_id or best.catalog_id
        return None

    def _best(self, hits: List[Candidate], meta: Candidate, scorer, threshold: int) -> Optional[Candidate]:
        best, best_score = None, -1
        for hit in hits or []:
            score = scorer(hit, meta)
            if score > best_score:
                best, best_score = hit, score
        return best if best is not None and best_score >= threshold else None

    @staticmethod
    def _name_score(hit: Candidate, meta: Candidate) -> int:
        relation = album_relation(normalize_string(meta.name), normalize_string(hit.name))
        return {'exact': 10, 'partial': 5}.get(relation, 0)

    def _search_score(self, hit: Candidate, meta: Candidate) -> int:
        score = self._name_score(hit, meta)
        if album_relation(normalize_string(meta.album_name), normalize_string(hit.album_name)) == 'exact':
            score += 5
        if meta.duration_ms and duration_within(meta.duration_ms, hit.duration_ms, 3000):
            score += 2
        return score

    def _deep_scan_score(self, hit: Candidate, meta: Candidate) -> int:
        score = self._name_score(hit, meta)
        artist = normalize_string(meta.artist_name)
        if artist and artist == normalize_string(hit.artist_name):
            score += 5
        if album_relation(normalize_string(meta.album_name), normalize_string(hit.album_name)) == 'exact':
            score += 3
        if meta.duration_ms and duration_within(meta.duration_ms, hit.duration_ms, 3000):
            score += 2
        return score


class BatchTransferEngine:
    """Adds candidate ids to a destination playlist in order, batch by batch.

    Each batch starts with `PlaylistInsertStrategy`; ids a strategy leaves
    unresolved are handed to the strategy it names. Partial failure of one
    batch never stops the next.
    """

    def __init__(self, destination: DestinationCatalog, channel=None,
                 settings: Optional[TransferSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.destination = destination
        self.channel = channel
        self.settings = settings or TransferSettings()
        self.sleep = sleep
        self.strategies = {
            s.name: s for s in (PlaylistInsertStrategy(), SingleInsertStrategy(), LibraryFallbackStrategy())
        }

    def add_tracks(self, playlist_id: str, candidate_ids: List[str],
                   details: Optional[Dict[str, Candidate]] = None) -> AddResult:
        """Insert `candidate_ids` preserving their order.

        Args:
            playlist_id: Destination playlist
            candidate_ids: Catalog ids to add
            details: Optional catalog metadata keyed by id, used by the library fallback

        Returns:
            AddResult with every id reported as either added or failed
        """
        ctx = TransferContext(self.destination, self.settings, channel=self.channel,
                              details=details, sleep=self.sleep)
        added: List[str] = []
        failed: List[str] = []
        size = max(1, self.settings.batch_size)

        for start in range(0, len(candidate_ids), size):
            batch = [str(i) for i in candidate_ids[start:start + size]]
            pending = batch
            strategy = self.strategies[PlaylistInsertStrategy.name]
            while pending:
                outcome = strategy.run(ctx, playlist_id, pending)
                added.extend(outcome.added_ids)
                failed.extend(outcome.failed_ids)
                handled = set(outcome.added_ids) | set(outcome.failed_ids)
                pending = [i for i in pending if i not in handled]
                if not pending:
                    break
                if outcome.next_strategy is None:
                    # Nothing left to try: ids the strategy neither added nor failed still count as failed.
                    failed.extend(pending)
                    break
                strategy = self.strategies[outcome.next_strategy]

            ctx.emit(f"Processed {min(start + size, len(candidate_ids))}/{len(candidate_ids)} tracks",
                     ids=batch, outcome='batch_done', strategy=strategy.name)

        return AddResult(added=len(added), failed=len(failed), added_ids=added, failed_ids=failed)
