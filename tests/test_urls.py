import pytest

from tubefetch.exceptions import ValidationError
from tubefetch.urls import is_allowed_youtube_url, is_playlist_url, validate_url


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=abc",
        "https://youtube.com/watch?v=abc",
        "https://m.youtube.com/watch?v=abc",
        "https://music.youtube.com/playlist?list=PL1",
        "http://youtu.be/abc",
    ],
)
def test_allowed(url):
    assert is_allowed_youtube_url(url)


@pytest.mark.parametrize(
    "url",
    [
        "https://vimeo.com/123",
        "https://notyoutube.com/watch?v=abc",
        "https://youtube.com.evil.example/watch?v=abc",
        "ftp://youtube.com/x",
        "youtube.com/watch?v=abc",
        "",
        None,
        42,
    ],
)
def test_rejected(url):
    assert not is_allowed_youtube_url(url)


def test_is_playlist_url():
    assert is_playlist_url("https://www.youtube.com/playlist?list=PL1")
    assert is_playlist_url("https://www.youtube.com/watch?v=a&list=PL1")
    assert not is_playlist_url("https://www.youtube.com/watch?v=a")


def test_validate_url_messages():
    with pytest.raises(ValidationError, match="Missing required field: url"):
        validate_url("")
    with pytest.raises(ValidationError, match="Only YouTube URLs are supported"):
        validate_url("https://vimeo.com/1")
    assert validate_url("https://youtu.be/a") == "https://youtu.be/a"
