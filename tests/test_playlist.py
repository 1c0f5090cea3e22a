import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_listing
from tubefetch.exceptions import EmptySelection, PlaylistLookupError
from tubefetch.playlist import PlaylistFetcher, parse_listing, select_items

PLAYLIST_DOC = {
    "title": "Mix",
    "entries": [
        {"id": "a1", "title": "First", "duration": 61.0, "channel": "Chan"},
        None,
        {"title": "no id"},
        {"id": "b2", "title": "Second", "uploader": "Up"},
    ],
}


class TestParseListing:
    def test_playlist(self):
        listing = parse_listing(PLAYLIST_DOC)

        assert listing.title == "Mix"
        assert listing.type == "playlist"
        assert [item.id for item in listing.items] == ["a1", "b2"]
        assert listing.items[0].channelTitle == "Chan"
        assert listing.items[1].channelTitle == "Up"
        assert listing.items[0].url == "https://www.youtube.com/watch?v=a1"

    def test_single_video(self):
        listing = parse_listing({"id": "v1", "title": "Solo", "duration": 10})

        assert listing.type == "video"
        assert [item.id for item in listing.items] == ["v1"]


class TestSelectItems:
    def test_subset_keeps_playlist_order(self):
        listing = make_listing(["A", "B", "C"])
        assert [i.id for i in select_items(listing, ["C", "A"])] == ["A", "C"]

    def test_no_selection_means_all(self):
        listing = make_listing(["A", "B"])
        assert len(select_items(listing, None)) == 2
        assert len(select_items(listing, [])) == 2

    def test_nothing_matches(self):
        with pytest.raises(EmptySelection):
            select_items(make_listing(["A"]), ["Z"])

    def test_empty_playlist(self):
        with pytest.raises(EmptySelection):
            select_items(make_listing([]))


class TestPlaylistFetcher:
    @patch("tubefetch.playlist.subprocess.run")
    def test_fetch(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=json.dumps(PLAYLIST_DOC), stderr="")

        listing = PlaylistFetcher("yt-dlp", timeout_s=5)("https://www.youtube.com/playlist?list=PL")

        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["yt-dlp", "--flat-playlist", "-J"]
        assert mock_run.call_args.kwargs["timeout"] == 5
        assert len(listing.items) == 2

    @patch("tubefetch.playlist.subprocess.run")
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = MagicMock(
            returncode=1, stdout="", stderr="ERROR: This playlist is private\n"
        )

        with pytest.raises(PlaylistLookupError, match="private"):
            PlaylistFetcher().fetch("https://www.youtube.com/playlist?list=PL")

    @patch("tubefetch.playlist.subprocess.run")
    def test_invalid_json(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="not json", stderr="")

        with pytest.raises(PlaylistLookupError):
            PlaylistFetcher().fetch("https://www.youtube.com/playlist?list=PL")

    @patch(
        "tubefetch.playlist.subprocess.run",
        side_effect=subprocess.TimeoutExpired("yt-dlp", 60),
    )
    def test_timeout(self, mock_run):
        with pytest.raises(PlaylistLookupError, match="timed out"):
            PlaylistFetcher().fetch("https://www.youtube.com/playlist?list=PL")
