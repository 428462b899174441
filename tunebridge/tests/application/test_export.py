import json

import pytest

from tunebridge.application.export import FORMATS, build_export
from tunebridge.domain.entities import SourceTrack


TRACKS = [
    SourceTrack(name="Song, with comma", artists=["Artist & Co"], album="Album", duration_ms=200000,
                source_id="s1", position=0),
    SourceTrack(name='Quote "Me"', artists=["Other"], album="<Album>", duration_ms=0, source_id=None, position=1),
]


def test_csv_export_quotes_every_field():
    doc = build_export('csv', TRACKS, 'spotify')

    lines = doc.body.splitlines()
    assert doc.content_type == 'text/csv'
    assert doc.extension == 'csv'
    assert lines[0] == "Name,Artist,Album,Duration(ms),Id"
    assert lines[1] == '"Song, with comma","Artist & Co","Album","200000","s1"'
    assert lines[2] == '"Quote ""Me""","Other","<Album>","0",""'


def test_json_export():
    doc = build_export('JSON', TRACKS, 'spotify')

    rows = json.loads(doc.body)
    assert doc.content_type == 'application/json'
    assert rows[0] == {'id': 's1', 'name': "Song, with comma", 'artist': "Artist & Co",
                       'album': "Album", 'duration_ms': 200000}


def test_xml_export_escapes_text():
    doc = build_export('xml', TRACKS, 'apple')

    assert doc.body.startswith('<tracks service="apple">')
    assert "<artist>Artist &amp; Co</artist>" in doc.body
    assert "<album>&lt;Album&gt;</album>" in doc.body
    assert doc.body.endswith("</tracks>")


def test_xspf_export():
    doc = build_export('xspf', TRACKS, 'spotify')

    assert doc.content_type == 'application/xspf+xml'
    assert 'xmlns="http://xspf.org/ns/0/"' in doc.body
    assert doc.body.count("<track>") == 2
    assert "<duration>200000</duration>" in doc.body


def test_txt_export():
    doc = build_export('txt', TRACKS, 'spotify')

    assert doc.body == 'Artist & Co - Song, with comma\nOther - Quote "Me"'


@pytest.mark.parametrize("service,expected", [
    ('spotify', "https://open.spotify.com/track/s1"),
    ('apple', "https://music.apple.com/gb/song/s1"),
])
def test_url_export_skips_tracks_without_id(service, expected):
    doc = build_export('url', TRACKS, service, storefront='gb')

    assert doc.body == expected
    assert doc.extension == 'txt'


def test_empty_playlist():
    assert build_export('csv', [], 'spotify').body == "Name,Artist,Album,Duration(ms),Id"
    assert json.loads(build_export('json', [], 'spotify').body) == []


def test_unknown_format():
    with pytest.raises(ValueError):
        build_export('m3u', TRACKS, 'spotify')
    assert 'm3u' not in FORMATS
