"""Unit tests for the filename matcher and canonical name generation."""

import pytest

from medialign.core.filename_matcher import (
    EpisodeGuess,
    FilenameMatcher,
    generate_filename,
    sanitize_title,
)


@pytest.fixture
def matcher():
    return FilenameMatcher()


@pytest.mark.unit
class TestPatterns:
    """Each supported naming convention."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("Show.S01E03.mkv", (1, 3)),
            ("show s1e3.mp4", (1, 3)),
            ("Show_S02_E10_720p.mkv", (2, 10)),
            ("show.s01.e03.avi", (1, 3)),
            ("Show 1x03.mkv", (1, 3)),
            ("Show 12x103.mkv", (12, 103)),
            ("Show Season 1 Episode 3.mkv", (1, 3)),
            ("show.season.2.episode.11.mkv", (2, 11)),
            ("show.305.mkv", (3, 5)),
            ("Show 101 Pilot.mkv", (1, 1)),
        ],
    )
    def test_recognized(self, matcher, filename, expected):
        assert matcher.match(filename) == EpisodeGuess(*expected)

    @pytest.mark.parametrize(
        "filename",
        [
            "Show.Episode5.mkv",
            "Show 1920x1080.mkv",
            "Show.720p.x264.mkv",
            "Show.2019.mkv",
            "random_video.mkv",
            "",
        ],
    )
    def test_not_recognized(self, matcher, filename):
        assert matcher.match(filename) is None

    def test_specific_pattern_wins_over_numeric(self, matcher):
        """S02E05 beats the stray 101 that appears first in the name."""
        guess, pattern = matcher.match_with_pattern("Show 101 S02E05.mkv")
        assert guess == EpisodeGuess(2, 5)
        assert pattern == "sxxexx"

    def test_directory_and_extension_ignored(self, matcher):
        """Digits in parent folders or the extension don't count."""
        assert matcher.match("/media/Season 9/show.mp4") is None
        assert matcher.match("/media/Season 9/Show.S01E02.mp4") == EpisodeGuess(1, 2)

    def test_match_is_deterministic(self, matcher):
        name = "Show.S04E12.Title.mkv"
        assert matcher.match(name) == matcher.match(name)

    def test_pattern_names_reported(self, matcher):
        assert matcher.match_with_pattern("show 2x07.mkv")[1] == "nxnn"
        assert matcher.match_with_pattern("show.207.mkv")[1] == "numeric"


@pytest.mark.unit
class TestGenerateFilename:
    """Canonical "S01E07 - Title.ext" names."""

    def test_basic(self):
        assert generate_filename("/tv/old name.mkv", 1, 7, "The Title") == "S01E07 - The Title.mkv"

    def test_keeps_extension(self):
        assert generate_filename("clip.MP4", 10, 2, "X").endswith(".MP4")

    def test_strips_illegal_characters(self):
        name = generate_filename("a.mkv", 2, 3, 'What? A "Title": Part 1/2')
        assert name == "S02E03 - What A Title Part 12.mkv"

    @pytest.mark.parametrize("title", ["", None, "???", "  "])
    def test_empty_title_drops_separator(self, title):
        assert generate_filename("a.mkv", 1, 1, title) == "S01E01.mkv"

    @pytest.mark.parametrize(
        "season,episode,title",
        [(1, 7, "The Title"), (12, 103, "Big: Finale"), (3, 5, ""), (100, 1, "Century")],
    )
    def test_generated_name_parses_back(self, matcher, season, episode, title):
        """A generated name always matches back to its own (season, episode)."""
        name = generate_filename("/tv/whatever.mkv", season, episode, title)
        assert matcher.match(name) == EpisodeGuess(season, episode)

    def test_sanitize_collapses_whitespace(self):
        assert sanitize_title("  A   B  C. ") == "A B C"


def test_episode_guess_code():
    assert EpisodeGuess(1, 3).code == "S01E03"
