import logging
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple, TypeVar

from tunebridge.domain.entities import Candidate, DestinationItem, SourceTrack
from tunebridge.domain.normalization import composite_key
from tunebridge.domain.ports import DestinationCatalog


logger = logging.getLogger(__name__)

T = TypeVar('T')


class DestinationIndex:
    """Keys already present in a destination playlist.

    Holds bare catalog ids, library ids and composite `meta:` fingerprints.
    Built once per run; only the run that built it registers further keys.
    """

    def __init__(self, keys: Optional[Iterable[str]] = None):
        self._keys: Set[str] = set(keys or [])

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> Set[str]:
        return set(self._keys)

    def register(self, key: Optional[Any]) -> None:
        if key is None or key == '':
            return
        self._keys.add(str(key))

    def add_item(self, item: DestinationItem) -> None:
        self.register(item.item_id)
        self.register(item.catalog_id)
        fingerprint = item_key(item)
        if fingerprint:
            self.register(fingerprint)

    def add(self, candidate: Candidate) -> None:
        """Register a candidate chosen during the current run."""
        self.register(candidate.catalog_id)
        self.register(candidate.library_id)
        fingerprint = candidate_key(candidate)
        if fingerprint:
            self.register(fingerprint)


def item_key(item: DestinationItem) -> Optional[str]:
    if not item.name:
        return None
    return composite_key(item.name, item.artist_name, item.album_name, item.duration_ms)


def candidate_key(candidate: Candidate) -> Optional[str]:
    if not candidate.name:
        return None
    return composite_key(candidate.name, candidate.artist_name, candidate.album_name, candidate.duration_ms)


def source_track_key(track: SourceTrack) -> str:
    """Stable identity of a source track: its ISRC when known, else the composite fingerprint."""
    if track.isrc:
        return f"isrc:{track.isrc.upper()}"
    return composite_key(track.name, track.primary_artist, track.album, track.duration_ms)


def build_index(destination: DestinationCatalog, playlist_id: str) -> DestinationIndex:
    """Read the whole destination playlist and index it.

    A failed page read propagates; a partial index is never returned.
    """
    index = DestinationIndex()
    count = 0
    for item in destination.list_playlist_items(playlist_id):
        index.add_item(item)
        count += 1
    logger.info(f"Indexed {count} existing items ({len(index)} keys) for playlist {playlist_id}")
    return index


def contains(index: DestinationIndex, candidate: Candidate) -> bool:
    for value in (candidate.catalog_id, candidate.library_id):
        if value is None or value == '':
            continue
        if str(value) in index or str(value).strip() in index:
            return True
    fingerprint = candidate_key(candidate)
    return bool(fingerprint) and fingerprint in index


def dedupe_tracks(items: Iterable[T], key: Callable[[T], Optional[str]]) -> Tuple[List[T], int]:
    """Single left-to-right pass; the first occurrence of each key is kept.

    Items whose key is None are always kept.
    """
    seen: Set[str] = set()
    kept: List[T] = []
    removed = 0
    for item in items:
        k = key(item)
        if k is None:
            kept.append(item)
            continue
        if k in seen:
            removed += 1
            continue
        seen.add(k)
        kept.append(item)
    return kept, removed
