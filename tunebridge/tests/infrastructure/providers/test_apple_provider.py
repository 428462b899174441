from unittest.mock import Mock

import pytest
import requests

from tunebridge.infrastructure.providers.apple import AppleMusicProvider
from tunebridge.crosscutting.ratelimit import RetryExecutor
from tunebridge.domain.errors import (
    AuthorizationExpired,
    NotFound,
    PermanentFailure,
    RateLimited,
    TemporaryFailure,
)


def response(status=200, payload=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.content = b'{}' if payload is not None else b''
    resp.json.return_value = payload if payload is not None else {}
    resp.text = ''
    return resp


def song(song_id, name="Song", artist="Artist", album="Album", duration=200000):
    return {'id': song_id, 'type': 'songs', 'attributes': {
        'name': name, 'artistName': artist, 'albumName': album, 'durationInMillis': duration}}


def library_song(song_id, catalog_id, name="Song"):
    return {'id': song_id, 'type': 'library-songs', 'attributes': {
        'name': name, 'artistName': 'Artist', 'albumName': 'Album', 'durationInMillis': 200000,
        'playParams': {'id': song_id, 'catalogId': catalog_id}}}


class TestAppleMusicProvider:
    """Tests for the Apple Music REST adapter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.session = Mock()
        self.session.headers = {}
        self.sleeps = []
        self.provider = AppleMusicProvider(
            'dev-token', 'user-token', storefront='gb', session=self.session,
            executor=RetryExecutor('apple', sleep=self.sleeps.append),
        )

    def _calls(self):
        return [(c.args[0], c.args[1], c.kwargs.get('params'), c.kwargs.get('json'))
                for c in self.session.request.call_args_list]

    def test_session_headers(self):
        assert self.session.headers['Authorization'] == 'Bearer dev-token'
        assert self.session.headers['Music-User-Token'] == 'user-token'

    def test_list_playlists_follows_next(self):
        self.session.request.side_effect = [
            response(payload={'data': [{'id': 'p.1', 'attributes': {'name': "Mine", 'canEdit': True}}],
                              'next': '/v1/me/library/playlists?offset=100'}),
            response(payload={'data': [{'id': 'p.2', 'attributes': {'name': "Shared", 'canEdit': False}}]}),
        ]

        playlists = self.provider.list_playlists()

        assert [(p.id, p.name, p.is_owned) for p in playlists] == [('p.1', "Mine", True), ('p.2', "Shared", False)]
        calls = self._calls()
        assert calls[0][2] == {'limit': 100}
        assert calls[1][1] == 'https://api.music.apple.com/v1/me/library/playlists?offset=100'
        assert calls[1][2] is None

    def test_search_by_isrc(self):
        self.session.request.return_value = response(payload={'data': [song('123', name="Come Together")]})

        candidates = self.provider.search_by_isrc('GBAYE0601690')

        assert candidates[0].catalog_id == '123'
        assert candidates[0].name == "Come Together"
        assert candidates[0].duration_ms == 200000
        assert self._calls() == [('GET', 'https://api.music.apple.com/v1/catalog/gb/songs',
                                  {'filter[isrc]': 'GBAYE0601690'}, None)]

    def test_search_reads_song_results(self):
        self.session.request.return_value = response(payload={'results': {'songs': {'data': [song('1'), song('2')]}}})

        candidates = self.provider.search("beatles come together", limit=5)

        assert [c.catalog_id for c in candidates] == ['1', '2']
        assert self._calls()[0][2] == {'term': "beatles come together", 'types': 'songs', 'limit': 5}

    def test_search_without_results(self):
        self.session.request.return_value = response(payload={'results': {}})

        assert self.provider.search("nothing") == []

    def test_library_search_carries_library_id(self):
        self.session.request.return_value = response(payload={
            'results': {'library-songs': {'data': [library_song('i.abc', '123')]}}})

        candidates = self.provider.library_search("Song Artist")

        assert candidates[0].library_id == 'i.abc'
        assert candidates[0].catalog_id == '123'

    def test_add_to_playlist_body(self):
        self.session.request.return_value = response(204)

        self.provider.add_to_playlist('p.1', ['1', '2'])

        assert self._calls() == [('POST', 'https://api.music.apple.com/v1/me/library/playlists/p.1/tracks', None,
                                  {'data': [{'id': '1', 'type': 'songs'}, {'id': '2', 'type': 'songs'}]})]

    def test_add_to_library(self):
        self.session.request.return_value = response(202)

        self.provider.add_to_library(['42'])

        assert self._calls() == [('POST', 'https://api.music.apple.com/v1/me/library', {'ids[songs]': '42'}, None)]

    def test_list_playlist_items_follows_next(self):
        self.session.request.side_effect = [
            response(payload={'data': [song('1'), library_song('i.2', '2')],
                              'next': '/v1/me/library/playlists/p.1/tracks?offset=100'}),
            response(payload={'data': [song('3')]}),
        ]

        items = list(self.provider.list_playlist_items('p.1'))

        assert [i.item_id for i in items] == ['1', 'i.2', '3']
        assert [i.catalog_id for i in items] == ['1', '2', '3']
        assert items[1].item_type == 'library-songs'
        assert self._calls()[1][1] == 'https://api.music.apple.com/v1/me/library/playlists/p.1/tracks?offset=100'

    def test_empty_playlist_answers_404(self):
        self.session.request.side_effect = [
            response(404, payload={'errors': []}),
            response(payload={'data': [{'id': 'p.1', 'attributes': {'name': 'Empty'}}]}),
        ]

        assert list(self.provider.list_playlist_items('p.1')) == []

    def test_missing_playlist_raises_not_found(self):
        self.session.request.return_value = response(404, payload={'errors': []})

        with pytest.raises(NotFound):
            list(self.provider.list_playlist_items('p.missing'))

    def test_failure_mid_pagination_propagates(self):
        self.session.request.side_effect = [
            response(payload={'data': [song('1')], 'next': '/next'}),
        ] + [response(500, payload={'errors': []})] * 4

        with pytest.raises(TemporaryFailure):
            list(self.provider.list_playlist_items('p.1'))

    def test_list_playlist_tracks_as_source(self):
        self.session.request.return_value = response(payload={'data': [song('1', name="A"), song('2', name="B")]})

        tracks = self.provider.list_playlist_tracks('p.1')

        assert [(t.position, t.name, t.source_id) for t in tracks] == [(0, "A", '1'), (1, "B", '2')]
        assert tracks[0].primary_artist == "Artist"

    def test_create_playlist(self):
        self.session.request.return_value = response(201, payload={
            'data': [{'id': 'p.new', 'attributes': {'name': 'Mix (Deduped)'}}]})

        playlist = self.provider.create_playlist('Mix (Deduped)')

        assert playlist.id == 'p.new'
        assert playlist.is_owned is True

    def test_create_playlist_without_id(self):
        self.session.request.return_value = response(201, payload={'data': []})

        with pytest.raises(PermanentFailure):
            self.provider.create_playlist('Broken')

    def test_get_catalog_songs_in_chunks(self):
        ids = [str(i) for i in range(60)]
        self.session.request.side_effect = [
            response(payload={'data': [song(i) for i in ids[:50]]}),
            response(payload={'data': [song(i) for i in ids[50:]]}),
        ]

        songs = self.provider.get_catalog_songs(ids)

        assert len(songs) == 60
        assert self._calls()[1][2] == {'ids': ','.join(ids[50:])}

    def test_detect_storefront(self):
        self.session.request.return_value = response(payload={'data': [{'id': 'de'}]})

        assert self.provider.detect_storefront() == 'de'

    def test_detect_storefront_falls_back(self):
        self.session.request.return_value = response(403, payload={'errors': []})

        assert self.provider.detect_storefront() == 'us'


class TestAppleErrorMapping:
    """Tests for HTTP status to domain error mapping."""

    def setup_method(self):
        """Set up test fixtures."""
        self.session = Mock()
        self.session.headers = {}
        self.sleeps = []
        self.provider = AppleMusicProvider('dev', 'user', session=self.session,
                                           executor=RetryExecutor('apple', sleep=self.sleeps.append))

    def test_401_is_authorization_expired(self):
        self.session.request.return_value = response(401, payload={'errors': []})

        with pytest.raises(AuthorizationExpired):
            self.provider.search("x")

    def test_429_retries_with_retry_after(self):
        self.session.request.side_effect = [
            response(429, payload={}, headers={'Retry-After': '4'}),
            response(payload={'results': {}}),
        ]

        assert self.provider.search("x") == []
        assert self.sleeps == [4.0]

    def test_persistent_429_surfaces_rate_limited(self):
        self.session.request.return_value = response(429, payload={})

        with pytest.raises(RateLimited):
            self.provider.search("x")
        assert self.session.request.call_count == 4

    def test_5xx_retried_then_succeeds(self):
        self.session.request.side_effect = [response(503, payload={}), response(payload={'results': {}})]

        self.provider.search("x")

        assert self.sleeps == [1]

    def test_400_is_permanent_and_not_retried(self):
        self.session.request.return_value = response(400, payload={'errors': [{'detail': 'bad'}]})

        with pytest.raises(PermanentFailure) as exc_info:
            self.provider.add_to_playlist('p.1', ['1'])

        assert exc_info.value.status == 400
        assert exc_info.value.payload == {'errors': [{'detail': 'bad'}]}
        assert self.session.request.call_count == 1

    def test_network_errors_are_temporary(self):
        self.session.request.side_effect = requests.ConnectionError("reset")

        with pytest.raises(TemporaryFailure):
            self.provider.search("x")
