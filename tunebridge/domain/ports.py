from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from .entities import Candidate, DestinationItem, Playlist, SourceTrack


class SourceCatalog(Protocol):
    """Port for the catalog tracks are read from.

    Implementations map provider payloads into SourceTrack entities, in playlist order,
    with `position` set to the zero-based index.
    """

    def list_playlist_tracks(self, playlist_id: str) -> List[SourceTrack]:
        """Return every track of the playlist, in order."""

    def list_playlists(self) -> List[Playlist]:
        """Return the playlists of the signed-in account."""

    def get_playlist_name(self, playlist_id: str) -> str:
        """Return the display name of the playlist."""


class DestinationCatalog(Protocol):
    """Port for the catalog tracks are written to."""

    def search_by_isrc(self, isrc: str) -> List[Candidate]:
        """Return catalog songs filtered by ISRC."""

    def search(self, term: str, limit: int = 25) -> List[Candidate]:
        """Free-text catalog search for songs."""

    def list_playlist_items(self, playlist_id: str) -> Iterable[DestinationItem]:
        """Page through the full playlist. Partial reads must raise."""

    def add_to_playlist(self, playlist_id: str, ids: List[str], item_type: str = "songs") -> None:
        """Insert ids into the playlist in one request."""

    def add_to_library(self, ids: List[str]) -> None:
        """Add catalog ids to the user's library."""

    def library_search(self, term: str, limit: int = 10) -> List[Candidate]:
        """Search the user's library; candidates carry library_id."""

    def recent_library_songs(self, limit: int = 200) -> List[Candidate]:
        """Most recently added library songs, newest first."""

    def get_catalog_songs(self, ids: List[str]) -> Dict[str, Candidate]:
        """Catalog metadata keyed by catalog id."""

    def detect_storefront(self) -> str:
        """Return the user's storefront, falling back to a default."""

    def list_playlists(self) -> List[Playlist]:
        """Return the user's library playlists."""

    def create_playlist(self, name: str, description: str = "") -> Playlist:
        """Create a playlist in the user's library."""

    def get_playlist_name(self, playlist_id: str) -> str:
        """Return the display name of the playlist."""


class KeyValueStore(Protocol):
    """Persistent key/value store for credentials, scheduled jobs and transfer history."""

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...
