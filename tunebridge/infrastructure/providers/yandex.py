import logging
from typing import Any, List, Optional

from yandex_music import Client
from yandex_music.exceptions import (
    BadRequestError,
    NetworkError,
    TimedOutError,
    UnauthorizedError,
    YandexMusicError,
)

from tunebridge.domain.entities import Playlist, SourceTrack
from tunebridge.domain.errors import (
    AuthorizationExpired,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)
from tunebridge.crosscutting.ratelimit import RateLimiter, RetryExecutor

logger = logging.getLogger(__name__)


def map_yandex_error(error: Exception) -> Exception:
    text = str(error)
    if isinstance(error, UnauthorizedError):
        return AuthorizationExpired(f"Yandex Music rejected the token: {text}")
    if "429" in text or "Too many requests" in text:
        return RateLimited(retry_after_ms=1000, message=text)
    if "404" in text or "not found" in text.lower():
        return NotFound(text)
    if isinstance(error, (TimedOutError, NetworkError)):
        return TemporaryFailure(text)
    if isinstance(error, BadRequestError):
        return PermanentFailure(text, status=400)
    return TemporaryFailure(text)


class YandexMusicProvider:
    """Yandex Music adapter, usable as the source catalog of a sync.

    Read-only: playlists are resolved against the signed-in account.
    """

    def __init__(self, oauth_token: str, limiter: Optional[RateLimiter] = None, client: Any = None):
        """Initialize the provider with OAuth token.

        Args:
            oauth_token: Yandex Music OAuth token
            limiter: Optional rate limiter
            client: Optional prebuilt client (tests)
        """
        self.executor = RetryExecutor('yandex', limiter)
        if client is not None:
            self._client = client
        else:
            self._client = self.executor.execute(lambda: self._guard(lambda: Client(oauth_token).init()),
                                                 'YandexInit')
        self._current_uid = None

    @staticmethod
    def _guard(fn):
        try:
            return fn()
        except YandexMusicError as e:
            raise map_yandex_error(e) from e

    def _call(self, label: str, fn):
        return self.executor.execute(lambda: self._guard(fn), label)

    def _uid(self):
        if self._current_uid is None:
            status = self._call('YandexAccount', self._client.account_status)
            self._current_uid = status.account.uid
        return self._current_uid

    def list_playlists(self) -> List[Playlist]:
        """Return the playlists of the signed-in account."""
        uid = self._uid()
        raw = self._call('YandexPlaylists', lambda: self._client.users_playlists_list(user_id=uid))
        playlists = []
        for playlist in raw or []:
            owner_uid = getattr(getattr(playlist, 'owner', None), 'uid', None)
            playlists.append(Playlist(
                id=str(playlist.kind),
                name=getattr(playlist, 'title', '') or '',
                owner_id=str(owner_uid or ''),
                is_owned=owner_uid == uid,
                track_count=getattr(playlist, 'track_count', 0) or 0,
            ))
        return playlists

    def get_playlist_name(self, playlist_id: str) -> str:
        playlist = self._call('YandexPlaylist', lambda: self._client.users_playlists(playlist_id, user_id=self._uid()))
        return getattr(playlist, 'title', '') or ''

    def list_playlist_tracks(self, playlist_id: str) -> List[SourceTrack]:
        """Return the playlist's tracks in order.

        Args:
            playlist_id: Yandex Music playlist ID (kind)
        """
        playlist = self._call('YandexPlaylist', lambda: self._client.users_playlists(playlist_id, user_id=self._uid()))
        shorts = self._call('YandexPlaylistTracks', playlist.fetch_tracks)

        tracks: List[SourceTrack] = []
        for short in shorts or []:
            # TrackShort wraps the full track; fall back to the wrapper itself
            base = getattr(short, 'track', None) or short
            if not getattr(base, 'title', None):
                logger.warning(f"Skipping empty track at position {len(tracks) + 1}")
                continue
            tracks.append(self._to_source_track(base, position=len(tracks)))
        logger.info(f"Fetched {len(tracks)} tracks from Yandex playlist {playlist_id}")
        return tracks

    @staticmethod
    def _to_source_track(base: Any, position: int) -> SourceTrack:
        artists = []
        for artist in getattr(base, 'artists', None) or []:
            name = getattr(artist, 'name', None)
            if name:
                artists.append(name)

        album = ''
        albums = getattr(base, 'albums', None)
        if albums:
            album = getattr(albums[0], 'title', '') or ''

        duration_ms = getattr(base, 'duration_ms', None) or 0

        return SourceTrack(
            name=base.title,
            artists=artists,
            album=album,
            duration_ms=int(duration_ms),
            isrc=getattr(base, 'isrc', None) or None,
            source_id=str(getattr(base, 'id', '')),
            position=position,
        )
