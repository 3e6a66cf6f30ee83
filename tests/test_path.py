import pytest

from qobuz_jobs.utils.path import clean_file_name, clean_folder_path, parse_qobuz_url


@pytest.mark.parametrize(
    "name", ["AC/DC - Back In Black", "a\\b\\c", "..", ".", "x/../y", ""]
)
def test_clean_file_name_never_contains_a_separator(name):
    cleaned = clean_file_name(name)
    assert "/" not in cleaned
    assert "\\" not in cleaned
    assert cleaned not in (".", "..")


def test_clean_file_name_keeps_ordinary_names():
    assert clean_file_name("01 The Midnight - Sunset.flac") == (
        "01 The Midnight - Sunset.flac"
    )


def test_clean_folder_path_keeps_hierarchy():
    assert clean_folder_path("Artist/Album: Deluxe") == "Artist/Album_ Deluxe"
    assert clean_folder_path("a\\b/c").count("\\") == 1
    assert clean_folder_path("a\\b/c").count("/") == 1


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://open.qobuz.com/album/0060254735180", ("album", "0060254735180")),
        ("https://play.qobuz.com/track/52151405", ("track", "52151405")),
        (
            "https://www.qobuz.com/us-en/album/night-drive-the-midnight/abc123",
            ("album", "abc123"),
        ),
        ("https://example.com/album/1", None),
    ],
)
def test_parse_qobuz_url(url, expected):
    assert parse_qobuz_url(url) == expected
