from conftest import make_album, make_track

from qobuz_jobs.models.catalog import Album
from qobuz_jobs.utils.formatting import (
    format_clock,
    format_custom_title,
    format_duration,
    format_size,
    format_title,
)


def test_album_template_uses_credited_artists():
    album = make_album()
    assert format_custom_title("{artists} - {name} ({year})", album) == (
        "The Midnight - Night Drive (2016)"
    )


def test_track_without_album_falls_back_to_performer():
    assert format_custom_title("{artists} - {name}", make_track()) == "Gunship - Sunset"


def test_unknown_placeholders_are_left_alone():
    assert format_custom_title("{name} {bogus}", make_track()) == "Sunset {bogus}"


def test_missing_values_render_empty():
    album = Album(id="x", title="Untitled")
    assert format_custom_title("{artists}|{year}|{name}", album) == "||Untitled"


def test_duration_placeholder():
    assert format_custom_title("{name} [{duration}]", make_track(duration=187)) == (
        "Sunset [3:07]"
    )


def test_version_is_appended_once():
    track = make_track(title="Sunset")
    track.version = "Remastered"
    assert format_title(track) == "Sunset (Remastered)"
    track.title = "Sunset (Remastered)"
    assert format_title(track) == "Sunset (Remastered)"


def test_human_readable_units():
    assert format_size(0) == "0 B"
    assert format_size(1536) == "1.5 KB"
    assert format_duration(9252) == "2h 34m 12s"
    assert format_duration(0) == "0s"
    assert format_clock(3723) == "1:02:03"
    assert format_clock(None) == ""
