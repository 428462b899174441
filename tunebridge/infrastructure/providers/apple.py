import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from tunebridge.domain.entities import Candidate, DestinationItem, Playlist, SourceTrack
from tunebridge.domain.errors import (
    AuthorizationExpired,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)
from tunebridge.crosscutting.ratelimit import RateLimiter, RetryExecutor

logger = logging.getLogger(__name__)

API_ROOT = 'https://api.music.apple.com'
CATALOG_CHUNK = 50
LIBRARY_PAGE = 100


class AppleMusicProvider:
    """Apple Music REST adapter: destination catalog and playlist service.

    Every request goes through a RetryExecutor, so 429/5xx are retried with
    backoff and each call is counted against the shared rate limiter.
    """

    def __init__(self,
                 developer_token: str,
                 user_token: str,
                 storefront: str = 'us',
                 limiter: Optional[RateLimiter] = None,
                 timeout: int = 15,
                 session: Optional[requests.Session] = None,
                 executor: Optional[RetryExecutor] = None):
        """Initialize Apple Music provider.

        Args:
            developer_token: Signed developer JWT
            user_token: Music-User-Token of the signed-in user
            storefront: Catalog storefront, e.g. 'us'
            limiter: Shared rate limiter for Apple Music
            timeout: Per-request timeout in seconds
            session: Optional preconfigured requests session
            executor: Optional retry executor (built from `limiter` otherwise)
        """
        self.storefront = storefront or 'us'
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {developer_token}',
            'Music-User-Token': user_token,
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })
        self.executor = executor or RetryExecutor('apple', limiter)

    # HTTP plumbing

    def _send(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
              body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, params=params, json=body, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TemporaryFailure(f"{method} {url} failed: {e}")

        status = response.status_code
        if status < 400:
            if status == 204 or not response.content:
                return {}
            return response.json()

        payload = self._payload(response)
        message = f"{method} {url} returned {status}"
        if status == 401:
            raise AuthorizationExpired(message)
        if status == 429:
            retry_after = response.headers.get('Retry-After')
            retry_after_ms = int(float(retry_after) * 1000) if retry_after else 1000
            raise RateLimited(retry_after_ms=retry_after_ms, message=message)
        if status == 404:
            raise NotFound(message, payload=payload)
        if status >= 500:
            raise TemporaryFailure(message, status=status, payload=payload)
        raise PermanentFailure(message, status=status, payload=payload)

    @staticmethod
    def _payload(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500]

    def _request(self, method: str, path: str, label: str, params: Optional[Dict[str, Any]] = None,
                 body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = path if path.startswith('http') else f"{API_ROOT}{path}"
        return self.executor.execute(lambda: self._send(method, url, params=params, body=body), label)

    def _paginate(self, path: str, label: str, params: Optional[Dict[str, Any]] = None,
                  max_items: Optional[int] = None) -> Iterator[Dict[str, Any]]:
        count = 0
        next_path: Optional[str] = path
        while next_path:
            data = self._request('GET', next_path, label, params=params)
            params = None  # `next` already carries the offset
            for item in data.get('data') or []:
                yield item
                count += 1
                if max_items is not None and count >= max_items:
                    return
            next_path = data.get('next')

    # Mapping

    @staticmethod
    def _to_candidate(item: Dict[str, Any]) -> Candidate:
        attrs = item.get('attributes') or {}
        play_params = attrs.get('playParams') or {}
        item_id = str(item.get('id', ''))
        if item.get('type') == 'library-songs':
            catalog_id = play_params.get('catalogId') or play_params.get('globalId') or ''
            return Candidate(
                catalog_id=str(catalog_id),
                name=attrs.get('name', ''),
                artist_name=attrs.get('artistName', ''),
                album_name=attrs.get('albumName', ''),
                duration_ms=attrs.get('durationInMillis'),
                library_id=item_id,
            )
        return Candidate(
            catalog_id=item_id,
            name=attrs.get('name', ''),
            artist_name=attrs.get('artistName', ''),
            album_name=attrs.get('albumName', ''),
            duration_ms=attrs.get('durationInMillis'),
        )

    @staticmethod
    def _to_item(item: Dict[str, Any]) -> DestinationItem:
        attrs = item.get('attributes') or {}
        play_params = attrs.get('playParams') or {}
        item_type = item.get('type', 'songs')
        item_id = str(item.get('id', ''))
        if item_type == 'songs':
            catalog_id = item_id
        else:
            catalog_id = play_params.get('catalogId') or play_params.get('globalId')
        return DestinationItem(
            item_id=item_id,
            item_type=item_type,
            catalog_id=str(catalog_id) if catalog_id else None,
            name=attrs.get('name', ''),
            artist_name=attrs.get('artistName', ''),
            album_name=attrs.get('albumName', ''),
            duration_ms=attrs.get('durationInMillis') or 0,
        )

    # Catalog

    def search_by_isrc(self, isrc: str) -> List[Candidate]:
        data = self._request('GET', f"/v1/catalog/{self.storefront}/songs", 'AppleISRC',
                             params={'filter[isrc]': isrc})
        return [self._to_candidate(item) for item in data.get('data') or []]

    def search(self, term: str, limit: int = 25) -> List[Candidate]:
        data = self._request('GET', f"/v1/catalog/{self.storefront}/search", 'AppleSearch',
                             params={'term': term, 'types': 'songs', 'limit': limit})
        songs = ((data.get('results') or {}).get('songs') or {}).get('data') or []
        return [self._to_candidate(item) for item in songs]

    def get_catalog_songs(self, ids: List[str]) -> Dict[str, Candidate]:
        result: Dict[str, Candidate] = {}
        for start in range(0, len(ids), CATALOG_CHUNK):
            chunk = [str(i) for i in ids[start:start + CATALOG_CHUNK]]
            data = self._request('GET', f"/v1/catalog/{self.storefront}/songs", 'AppleCatalogSongs',
                                 params={'ids': ','.join(chunk)})
            for item in data.get('data') or []:
                candidate = self._to_candidate(item)
                result[candidate.catalog_id] = candidate
        return result

    def detect_storefront(self) -> str:
        try:
            data = self._request('GET', '/v1/me/storefront', 'AppleStorefront')
            storefront = (data.get('data') or [{}])[0].get('id')
        except (NotFound, PermanentFailure, TemporaryFailure, RateLimited) as e:
            logger.warning(f"Storefront detection failed, falling back to 'us': {e}")
            return 'us'
        return storefront or 'us'

    # Library

    def add_to_library(self, ids: List[str]) -> None:
        for start in range(0, len(ids), 25):
            chunk = [str(i) for i in ids[start:start + 25]]
            self._request('POST', '/v1/me/library', 'AppleAddToLibrary', params={'ids[songs]': ','.join(chunk)})
            logger.info(f"Added {len(chunk)} songs to Apple Music library")

    def library_search(self, term: str, limit: int = 10) -> List[Candidate]:
        data = self._request('GET', '/v1/me/library/search', 'AppleLibrarySearch',
                             params={'term': term, 'types': 'library-songs', 'limit': limit})
        results = data.get('results') or {}
        songs = (results.get('library-songs') or results.get('songs') or {}).get('data') or []
        return [self._to_candidate({**item, 'type': 'library-songs'}) for item in songs]

    def recent_library_songs(self, limit: int = 200) -> List[Candidate]:
        items = self._paginate('/v1/me/library/songs', 'AppleRecentLibrary',
                               params={'limit': LIBRARY_PAGE}, max_items=limit)
        return [self._to_candidate({**item, 'type': 'library-songs'}) for item in items]

    # Playlists

    def list_playlists(self) -> List[Playlist]:
        playlists = []
        for item in self._paginate('/v1/me/library/playlists', 'ApplePlaylists', params={'limit': LIBRARY_PAGE}):
            attrs = item.get('attributes') or {}
            playlists.append(Playlist(id=item['id'], name=attrs.get('name', ''),
                                      is_owned=bool(attrs.get('canEdit', True))))
        logger.info(f"Fetched {len(playlists)} Apple Music library playlists")
        return playlists

    def get_playlist_name(self, playlist_id: str) -> str:
        data = self._request('GET', f"/v1/me/library/playlists/{playlist_id}", 'ApplePlaylist')
        entries = data.get('data') or [{}]
        return (entries[0].get('attributes') or {}).get('name', '')

    def list_playlist_items(self, playlist_id: str) -> Iterator[DestinationItem]:
        """Page through every item of a library playlist.

        The tracks relationship of an empty playlist answers 404; that is only
        treated as empty after the playlist itself is confirmed to exist.
        """
        path = f"/v1/me/library/playlists/{playlist_id}/tracks"
        try:
            first_page = self._request('GET', path, 'ApplePlaylistTracks')
        except NotFound:
            # Raises NotFound itself if the playlist does not exist
            self.get_playlist_name(playlist_id)
            return
        for item in first_page.get('data') or []:
            yield self._to_item(item)
        next_path = first_page.get('next')
        if next_path:
            for item in self._paginate(next_path, 'ApplePlaylistTracks'):
                yield self._to_item(item)

    def list_playlist_tracks(self, playlist_id: str) -> List[SourceTrack]:
        tracks = []
        for position, item in enumerate(self.list_playlist_items(playlist_id)):
            tracks.append(SourceTrack(
                name=item.name,
                artists=[item.artist_name] if item.artist_name else [],
                album=item.album_name,
                duration_ms=item.duration_ms,
                source_id=item.catalog_id or item.item_id,
                position=position,
            ))
        return tracks

    def add_to_playlist(self, playlist_id: str, ids: List[str], item_type: str = 'songs') -> None:
        body = {'data': [{'id': str(i), 'type': item_type} for i in ids]}
        self._request('POST', f"/v1/me/library/playlists/{playlist_id}/tracks", 'AppleAddTracks', body=body)

    def create_playlist(self, name: str, description: str = '') -> Playlist:
        body = {'attributes': {'name': name, 'description': description}}
        data = self._request('POST', '/v1/me/library/playlists', 'AppleCreatePlaylist', body=body)
        created = (data.get('data') or [None])[0]
        if not created or not created.get('id'):
            raise PermanentFailure("Failed to create Apple Music playlist", payload=data)
        attrs = created.get('attributes') or {}
        return Playlist(id=created['id'], name=attrs.get('name', name), is_owned=True)
