from unittest.mock import Mock

import pytest

from tunebridge.application.dedup import (
    DestinationIndex,
    build_index,
    contains,
    dedupe_tracks,
    source_track_key,
)
from tunebridge.domain.entities import Candidate, DestinationItem, SourceTrack
from tunebridge.domain.errors import TemporaryFailure


def destination_with(items):
    destination = Mock()
    destination.list_playlist_items.return_value = iter(items)
    return destination


class TestDestinationIndex:
    """Tests for indexing a destination playlist and membership checks."""

    def setup_method(self):
        """Set up test fixtures."""
        self.items = [
            DestinationItem("am1", "songs", "am1", "Song 1", "Artist 1", "Album 1", 210000),
            # Library-only upload: no catalog id to compare against
            DestinationItem("i.lib9", "library-songs", None, "Song 9 (Remastered)", "Artist 9", "Album 9", 290000),
        ]
        self.destination = destination_with(self.items)
        self.index = build_index(self.destination, "p.dst")

    def test_build_index_reads_whole_playlist(self):
        self.destination.list_playlist_items.assert_called_once_with("p.dst")
        assert "am1" in self.index
        assert "i.lib9" in self.index

    def test_catalog_id_match(self):
        assert contains(self.index, Candidate("am1", "Different Title", "Someone", "", 1000))

    def test_library_item_matches_by_composite_key_only(self):
        candidate = Candidate("am9", "Song 9", "Artist 9", "Album 9", 291000)

        assert "am9" not in self.index
        assert contains(self.index, candidate)

    def test_duration_outside_bucket_is_not_a_match(self):
        assert not contains(self.index, Candidate("am9", "Song 9", "Artist 9", "Album 9", 320000))

    def test_candidate_with_only_library_id(self):
        assert contains(self.index, Candidate("", library_id="i.lib9"))
        assert not contains(self.index, Candidate("", library_id="i.other"))

    def test_unknown_candidate_is_absent(self):
        assert not contains(self.index, Candidate("am2", "Song 2", "Artist 2", "Album 2", 220000))

    def test_add_suppresses_second_add_in_same_run(self):
        candidate = Candidate("am2", "Song 2", "Artist 2", "Album 2", 220000)

        self.index.add(candidate)

        assert contains(self.index, candidate)
        # Same recording found under another catalog id
        assert contains(self.index, Candidate("am2b", "Song 2", "Artist 2", "Album 2", 221000))

    def test_add_registers_library_id(self):
        self.index.add(Candidate("am3", "Song 3", "Artist 3", "Album 3", 230000, library_id="i.lib3"))

        assert contains(self.index, Candidate("", library_id="i.lib3"))

    def test_failed_page_read_propagates(self):
        def pages(playlist_id):
            yield self.items[0]
            raise TemporaryFailure("Apple 503", status=503)

        destination = Mock()
        destination.list_playlist_items.side_effect = pages

        with pytest.raises(TemporaryFailure):
            build_index(destination, "p.dst")

    def test_empty_values_are_not_registered(self):
        index = DestinationIndex()
        index.register(None)
        index.register('')

        assert len(index) == 0


def test_dedupe_keeps_first_occurrence_and_none_keys():
    items = ["a", "b", "a", None, None, "c", "b"]

    kept, removed = dedupe_tracks(items, key=lambda item: item)

    assert kept == ["a", "b", None, None, "c"]
    assert removed == 2


def test_dedupe_source_tracks_by_isrc_before_metadata():
    first = SourceTrack(name="Song", artists=["A"], album="Album", duration_ms=200000, isrc="usabc1", position=0)
    retitled = SourceTrack(name="Song - Remastered", artists=["A"], album="Album", duration_ms=200000,
                           isrc="USABC1", position=1)
    other = SourceTrack(name="Song", artists=["A"], album="Album", duration_ms=200000, position=2)

    kept, removed = dedupe_tracks([first, retitled, other], key=source_track_key)

    assert kept == [first, other]
    assert removed == 1
