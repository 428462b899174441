import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from tunebridge.domain.entities import Candidate, Confidence, MatchResult, MatchTier, SourceTrack
from tunebridge.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure
from tunebridge.domain.normalization import (
    COMPILATION_PATTERN,
    LIVE_PATTERN,
    REMIX_PATTERN,
    album_relation,
    duration_within,
    jaccard_similarity,
    normalize_string,
)
from tunebridge.domain.ports import DestinationCatalog


logger = logging.getLogger(__name__)

# Remote errors that make a single tier fall through instead of failing the track.
_LOOKUP_ERRORS = (RateLimited, TemporaryFailure, PermanentFailure, NotFound)


@dataclass(frozen=True)
class MatcherSettings:
    """Tunable thresholds of the three matching tiers."""

    name_threshold: float = 0.9
    artist_threshold: float = 0.9
    precise_duration_ms: int = 2000
    flexible_duration_ms: int = 3000
    flexible_threshold: int = 12
    precise_limit: int = 25
    flexible_limit: int = 50
    live_pattern: str = LIVE_PATTERN
    remix_pattern: str = REMIX_PATTERN
    compilation_pattern: str = COMPILATION_PATTERN


class _Signals:
    """Live / remix / compilation markers of one track."""

    def __init__(self, settings: MatcherSettings):
        self._live = re.compile(settings.live_pattern, re.IGNORECASE)
        self._remix = re.compile(settings.remix_pattern, re.IGNORECASE)
        self._compilation = re.compile(settings.compilation_pattern, re.IGNORECASE)

    def live(self, name: str, album: str) -> bool:
        return bool(self._live.search(name or '') or self._live.search(album or ''))

    def remix(self, name: str) -> bool:
        return bool(self._remix.search(name or ''))

    def compilation(self, album: str) -> bool:
        return bool(self._compilation.search(album or ''))


class TrackMatcher:
    """Resolves one source track to at most one destination candidate.

    Tiers, first acceptance wins:
    1. ISRC lookup, vetoed and scored by album / duration
    2. Precise metadata search (name + artist + album, strict similarity)
    3. Flexible search (name + artist), vetoed and scored with a short-circuit threshold

    Every veto, score and acceptance is logged and, when a channel is given,
    published as a `log` event.
    """

    def __init__(self, settings: Optional[MatcherSettings] = None, channel=None):
        self.settings = settings or MatcherSettings()
        self.channel = channel
        self._signals = _Signals(self.settings)

    def match(self, source_track: SourceTrack, destination: DestinationCatalog) -> MatchResult:
        """Run the tiers in order for a single track.

        Args:
            source_track: Track read from the source catalog
            destination: Catalog to search

        Returns:
            MatchResult; `candidate` is None when no tier accepted
        """
        if source_track.isrc:
            result = self._isrc_tier(source_track, destination)
            if result is not None:
                return result

        result = self._precise_tier(source_track, destination)
        if result is not None:
            return result

        result = self._flexible_tier(source_track, destination)
        if result is not None:
            return result

        self._report(source_track, MatchTier.NONE, f'No match for "{source_track.name}"',
                     level='warning', reason='not_found')
        return MatchResult(source_track=source_track, candidate=None, tier=MatchTier.NONE,
                           score=0, confidence=Confidence.LOW, reason='not_found')

    # Tiers

    def _isrc_tier(self, track: SourceTrack, destination: DestinationCatalog) -> Optional[MatchResult]:
        candidates = self._lookup(MatchTier.ISRC, track, lambda: destination.search_by_isrc(track.isrc))
        if not candidates:
            return None

        survivors = [c for c in candidates if self._veto_reason(track, c, MatchTier.ISRC) is None]
        # All vetoed: the identifier is still the strongest signal available.
        pool = survivors or candidates

        src_album = normalize_string(track.album)
        best, best_score = None, -1
        for candidate in pool:
            score = 0
            relation = album_relation(src_album, normalize_string(candidate.album_name))
            if relation == 'exact':
                score += 100
            elif relation == 'partial':
                score += 50
            if duration_within(track.duration_ms, candidate.duration_ms, self.settings.precise_duration_ms):
                score += 5
            if score > best_score:
                best, best_score = candidate, score

        album_exact = album_relation(src_album, normalize_string(best.album_name)) == 'exact'
        confidence = Confidence.HIGH if album_exact else Confidence.MEDIUM
        if album_exact:
            message = f'Matched "{track.name}" via ISRC'
        else:
            message = (f'Matched "{track.name}" via ISRC but album differs. '
                       f'Source album: "{track.album}", matched album: "{best.album_name}"')
        self._report(track, MatchTier.ISRC, message, score=best_score, reason='accepted')
        return MatchResult(source_track=track, candidate=best, tier=MatchTier.ISRC,
                           score=best_score, confidence=confidence, reason='isrc')

    def _precise_tier(self, track: SourceTrack, destination: DestinationCatalog) -> Optional[MatchResult]:
        src_name = normalize_string(track.name)
        src_artist = normalize_string(track.primary_artist)
        src_album = normalize_string(track.album)
        term = ' '.join(part for part in (src_name, src_artist, src_album) if part)
        if not term:
            return None

        candidates = self._lookup(MatchTier.PRECISE_METADATA, track,
                                  lambda: destination.search(term, limit=self.settings.precise_limit))
        for candidate in candidates or []:
            name_ok = jaccard_similarity(src_name, candidate.name) >= self.settings.name_threshold
            artist_ok = jaccard_similarity(src_artist, candidate.artist_name) >= self.settings.artist_threshold
            album_ok = album_relation(src_album, normalize_string(candidate.album_name)) == 'exact'
            if not (name_ok and artist_ok and album_ok):
                continue
            if not duration_within(track.duration_ms, candidate.duration_ms, self.settings.precise_duration_ms):
                self._report(track, MatchTier.PRECISE_METADATA,
                             f'Rejected "{candidate.name}" for "{track.name}" due to duration mismatch',
                             level='info', reason='duration_mismatch', candidate_id=candidate.catalog_id)
                continue
            self._report(track, MatchTier.PRECISE_METADATA,
                         f'Matched "{track.name}" via precise metadata and duration', reason='accepted')
            return MatchResult(source_track=track, candidate=candidate, tier=MatchTier.PRECISE_METADATA,
                               score=1, confidence=Confidence.HIGH, reason='precise_metadata')
        return None

    def _flexible_tier(self, track: SourceTrack, destination: DestinationCatalog) -> Optional[MatchResult]:
        term = ' '.join(part for part in (normalize_string(track.name), normalize_string(track.primary_artist)) if part)
        if not term:
            return None

        candidates = self._lookup(MatchTier.FLEXIBLE_SEARCH, track,
                                  lambda: destination.search(term, limit=self.settings.flexible_limit))
        best, best_score = self._score_flexible(track, candidates or [])
        if best is None:
            return None

        if best_score > self.settings.flexible_threshold:
            confidence = Confidence.MEDIUM
            reason = 'flexible_threshold'
        else:
            confidence = Confidence.MEDIUM if best_score > 0 else Confidence.LOW
            reason = 'flexible_best'
            self._report(track, MatchTier.FLEXIBLE_SEARCH,
                         f'Found "{track.name}" via flexible search below threshold (score {best_score})',
                         level='warning', score=best_score, reason='below_threshold')
        return MatchResult(source_track=track, candidate=best, tier=MatchTier.FLEXIBLE_SEARCH,
                           score=best_score, confidence=confidence, reason=reason)

    def _score_flexible(self, track: SourceTrack, candidates: List[Candidate]) -> Tuple[Optional[Candidate], int]:
        src_album = normalize_string(track.album)
        best, best_score = None, -1
        for candidate in candidates:
            veto = self._veto_reason(track, candidate, MatchTier.FLEXIBLE_SEARCH)
            if veto is not None:
                continue

            score = 0
            relation = album_relation(src_album, normalize_string(candidate.album_name))
            if relation == 'exact':
                score += 10
            elif relation == 'partial':
                score += 5
            if duration_within(track.duration_ms, candidate.duration_ms, self.settings.flexible_duration_ms):
                score += 3

            if score > best_score:
                best, best_score = candidate, score
                if best_score > self.settings.flexible_threshold:
                    self._report(track, MatchTier.FLEXIBLE_SEARCH,
                                 f'Matched "{track.name}" via flexible search (score {best_score}). '
                                 f'Source album: "{track.album}", matched album: "{candidate.album_name}"',
                                 score=best_score, reason='accepted')
                    break
        return best, best_score

    # Helpers

    def _veto_reason(self, track: SourceTrack, candidate: Candidate, tier: MatchTier) -> Optional[str]:
        signals = self._signals
        reason = None
        if not signals.live(track.name, track.album) and signals.live(candidate.name, candidate.album_name):
            reason = 'live_veto'
        elif not signals.remix(track.name) and signals.remix(candidate.name):
            reason = 'remix_veto'
        elif not signals.compilation(track.album) and signals.compilation(candidate.album_name):
            reason = 'compilation_veto'

        if reason:
            self._report(track, tier,
                         f'Rejected "{candidate.name}" ({candidate.album_name}) for "{track.name}" due to {reason}',
                         level='info', reason=reason, candidate_id=candidate.catalog_id)
        return reason

    def _lookup(self, tier: MatchTier, track: SourceTrack, fn) -> Optional[List[Candidate]]:
        try:
            return fn()
        except _LOOKUP_ERRORS as e:
            self._report(track, tier, f'{tier.value} lookup failed for "{track.name}": {e}',
                         level='warning', reason='lookup_failed')
            return None

    def _report(self, track: SourceTrack, tier: MatchTier, message: str, level: str = 'info',
                score: Optional[float] = None, reason: str = '', **fields) -> None:
        logger.log(getattr(logging, level.upper()), f"[{tier.value}] {message}")
        if self.channel is not None:
            self.channel.log(message, level=level, tier=tier.value, score=score, reason=reason,
                             position=track.position, **fields)
