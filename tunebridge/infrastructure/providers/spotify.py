import logging
from typing import Any, Callable, Dict, List, Optional

import requests
import spotipy
from spotipy.oauth2 import SpotifyOAuth
from urllib3.exceptions import ReadTimeoutError

from tunebridge.domain.entities import Playlist, SourceTrack
from tunebridge.domain.errors import (
    AuthorizationExpired,
    ConfigurationError,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)
from tunebridge.crosscutting.ratelimit import RateLimiter, RetryExecutor

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
TRACKS_LOOKUP_CHUNK = 50
PLAYLISTS_PAGE = 50


def map_spotify_error(error: Exception) -> Exception:
    """Translate a spotipy / transport exception into the domain error taxonomy."""
    if isinstance(error, spotipy.SpotifyException):
        status = error.http_status
        message = f"Spotify {status}: {error.msg}"
        if status == 401:
            return AuthorizationExpired(message)
        if status == 429:
            headers = error.headers or {}
            retry_after = headers.get('Retry-After') or headers.get('retry-after')
            retry_after_ms = int(float(retry_after) * 1000) if retry_after else 1000
            return RateLimited(retry_after_ms=retry_after_ms, message=message)
        if status == 404:
            return NotFound(message)
        if status is not None and status >= 500:
            return TemporaryFailure(message, status=status)
        return PermanentFailure(message, status=status)
    if isinstance(error, (requests.Timeout, requests.ConnectionError, ReadTimeoutError)):
        return TemporaryFailure(f"Spotify request failed: {error}")
    return error


class SpotifyProvider:
    """Spotify source catalog and playlist service.

    The spotipy client is built with its own retries disabled; retries, rate
    limiting and the one-shot token refresh are owned by the RetryExecutor.
    """

    def __init__(self,
                 access_token: str,
                 refresh_token: Optional[str] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None,
                 limiter: Optional[RateLimiter] = None,
                 on_token_refresh: Optional[Callable[[str, Optional[str]], None]] = None,
                 requests_timeout: int = 15,
                 client: Optional[spotipy.Spotify] = None):
        """Initialize Spotify provider.

        Args:
            access_token: Spotify access token
            refresh_token: Spotify refresh token
            client_id: Spotify client ID for token refresh
            client_secret: Spotify client secret for token refresh
            redirect_uri: Redirect URI registered for the client
            limiter: Shared rate limiter for Spotify
            on_token_refresh: Called with (access_token, refresh_token) after a refresh
            requests_timeout: Per-request timeout in seconds
            client: Optional prebuilt client (tests)
        """
        if not access_token and client is None:
            raise ConfigurationError("Spotify access token is required")
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri or 'http://127.0.0.1:8888/callback'
        self.requests_timeout = requests_timeout
        self.on_token_refresh = on_token_refresh
        self._client = client or self._build_client(access_token)
        self.executor = RetryExecutor('spotify', limiter, refresh=self.refresh_access_token)

    def _build_client(self, access_token: str) -> spotipy.Spotify:
        return spotipy.Spotify(
            auth=access_token,
            requests_timeout=self.requests_timeout,
            retries=0,
            status_retries=0,
        )

    def refresh_access_token(self) -> None:
        """Exchange the refresh token for a new access token and rebuild the client."""
        if not self.refresh_token:
            raise AuthorizationExpired("Spotify token expired and no refresh token is available")
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Cannot refresh Spotify token: missing client credentials")

        logger.info("Refreshing Spotify access token...")
        oauth_manager = SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope='playlist-read-private playlist-modify-public playlist-modify-private',
            open_browser=False,
        )
        try:
            token_info = oauth_manager.refresh_access_token(self.refresh_token)
        except spotipy.SpotifyOauthError as e:
            raise AuthorizationExpired(f"Failed to refresh Spotify token: {e}")

        if not token_info or 'access_token' not in token_info:
            raise AuthorizationExpired("Failed to refresh Spotify token: invalid response")

        self.access_token = token_info['access_token']
        if token_info.get('refresh_token'):
            self.refresh_token = token_info['refresh_token']
        self._client = self._build_client(self.access_token)
        if self.on_token_refresh is not None:
            self.on_token_refresh(self.access_token, self.refresh_token)
        logger.info("Spotify access token refreshed successfully")

    def _call(self, label: str, method: str, *args, **kwargs) -> Any:
        def attempt():
            # Resolve the client per attempt so a refreshed token is picked up
            fn = getattr(self._client, method)
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                mapped = map_spotify_error(e)
                if mapped is e:
                    raise
                raise mapped from e

        return self.executor.execute(attempt, label)

    @staticmethod
    def _to_source_track(track: Dict[str, Any], position: int) -> SourceTrack:
        artists = [a.get('name', '') for a in track.get('artists') or [] if a.get('name')]
        album = track.get('album') or {}
        isrc = (track.get('external_ids') or {}).get('isrc') or None
        return SourceTrack(
            name=track.get('name') or '',
            artists=artists,
            album=album.get('name', '') if album else '',
            duration_ms=track.get('duration_ms') or 0,
            isrc=isrc,
            source_id=track.get('id'),
            position=position,
        )

    def list_playlist_tracks(self, playlist_id: str) -> List[SourceTrack]:
        """List every track of a playlist in order, then fill in missing ISRCs.

        Args:
            playlist_id: Playlist ID

        Returns:
            Source tracks with `position` set to their index
        """
        raw_tracks: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self._call('SpotifyPlaylistTracks', 'playlist_items', playlist_id,
                              limit=PAGE_SIZE, offset=offset, additional_types=('track',))
            items = (page or {}).get('items') or []
            for index, item in enumerate(items):
                track = item.get('track')
                if not track:
                    logger.warning(f"Skipping empty track at position {offset + index + 1}")
                    continue
                raw_tracks.append(track)
            if not page or not page.get('next'):
                break
            offset += len(items) or PAGE_SIZE

        self._enrich_isrc(raw_tracks)
        tracks = [self._to_source_track(t, position) for position, t in enumerate(raw_tracks)]
        logger.info(f"Fetched {len(tracks)} tracks from Spotify playlist {playlist_id}")
        return tracks

    def _enrich_isrc(self, raw_tracks: List[Dict[str, Any]]) -> None:
        missing = [t for t in raw_tracks if t.get('id') and not (t.get('external_ids') or {}).get('isrc')]
        for start in range(0, len(missing), TRACKS_LOOKUP_CHUNK):
            chunk = missing[start:start + TRACKS_LOOKUP_CHUNK]
            response = self._call('SpotifyTracksLookup', 'tracks', [t['id'] for t in chunk])
            by_id = {t['id']: t for t in (response or {}).get('tracks') or [] if t}
            for track in chunk:
                full = by_id.get(track['id'])
                if full and full.get('external_ids'):
                    track['external_ids'] = full['external_ids']

    def list_playlists(self) -> List[Playlist]:
        """List the current user's playlists, followed ones included.

        Returns:
            Playlists with `is_owned` set for those the user can edit
        """
        user = self._call('SpotifyCurrentUser', 'current_user')
        user_id = (user or {}).get('id', '')
        playlists: List[Playlist] = []
        offset = 0
        while True:
            page = self._call('SpotifyPlaylists', 'current_user_playlists', limit=PLAYLISTS_PAGE, offset=offset)
            items = (page or {}).get('items') or []
            for item in items:
                if not item or not item.get('id'):
                    continue
                owner_id = (item.get('owner') or {}).get('id', '')
                playlists.append(Playlist(
                    id=item['id'],
                    name=item.get('name') or '',
                    owner_id=owner_id,
                    is_owned=owner_id == user_id,
                    track_count=(item.get('tracks') or {}).get('total', 0),
                ))
            if not page or not page.get('next'):
                break
            offset += len(items) or PLAYLISTS_PAGE
        logger.info(f"Fetched {len(playlists)} Spotify playlists")
        return playlists

    def get_playlist_name(self, playlist_id: str) -> str:
        data = self._call('SpotifyPlaylist', 'playlist', playlist_id, fields='name')
        return (data or {}).get('name', '')

    def create_playlist(self, name: str, description: str = '') -> Playlist:
        user = self._call('SpotifyCurrentUser', 'current_user')
        created = self._call('SpotifyCreatePlaylist', 'user_playlist_create', user['id'], name,
                             public=False, description=description)
        return Playlist(id=created['id'], name=created.get('name', name), owner_id=user['id'], is_owned=True)

    def add_to_playlist(self, playlist_id: str, ids: List[str], item_type: str = 'songs') -> None:
        for start in range(0, len(ids), PAGE_SIZE):
            chunk = [f"spotify:track:{i}" if ':' not in str(i) else str(i) for i in ids[start:start + PAGE_SIZE]]
            self._call('SpotifyAddTracks', 'playlist_add_items', playlist_id, chunk)
