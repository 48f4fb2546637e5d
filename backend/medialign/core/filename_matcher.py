"""Filename Matcher - season/episode extraction from file names.

Patterns are tried in priority order and the first hit wins. Looser
patterns sit at the end of the list so they only apply when nothing more
specific matched (a bare "101" is the last resort).
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePath
from typing import NamedTuple

# Characters Windows refuses in file names
_ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class EpisodeGuess(NamedTuple):
    season: int
    episode: int

    @property
    def code(self) -> str:
        return f"S{self.season:02d}E{self.episode:02d}"


def _season_episode_groups(match: re.Match[str]) -> EpisodeGuess:
    return EpisodeGuess(int(match.group("season")), int(match.group("episode")))


@dataclass(frozen=True)
class FilenamePattern:
    """One (pattern, extractor) pair in the ordered pattern table."""

    name: str
    regex: re.Pattern[str]
    extract: Callable[[re.Match[str]], EpisodeGuess] = _season_episode_groups


DEFAULT_PATTERNS: tuple[FilenamePattern, ...] = (
    # Show.S01E03, show s1e3
    FilenamePattern(
        "sxxexx",
        re.compile(r"s(?P<season>\d{1,3})[\s_-]?e(?P<episode>\d{1,3})(?!\d)", re.IGNORECASE),
    ),
    # show.s01.e03
    FilenamePattern(
        "dotted",
        re.compile(r"s(?P<season>\d{1,3})\.e(?P<episode>\d{1,3})(?!\d)", re.IGNORECASE),
    ),
    # show 1x03 (but not 1920x1080)
    FilenamePattern(
        "nxnn",
        re.compile(r"(?<!\d)(?P<season>\d{1,2})x(?P<episode>\d{1,3})(?!\d)", re.IGNORECASE),
    ),
    # Show Season 1 Episode 3
    FilenamePattern(
        "textual",
        re.compile(
            r"season[\s._-]*(?P<season>\d{1,2}).*?episode[\s._-]*(?P<episode>\d{1,3})(?!\d)",
            re.IGNORECASE,
        ),
    ),
    # show.103 - single-digit seasons only; skips 720p and x264
    FilenamePattern(
        "numeric",
        re.compile(
            r"(?<![\dxh])(?P<season>[1-9])(?P<episode>\d{2})(?![\dpi])",
            re.IGNORECASE,
        ),
    ),
)


class FilenameMatcher:
    """Extracts (season, episode) from a file name using ordered heuristics.

    Pure: no I/O, same input always gives the same output. Directory parts
    and the extension are ignored.
    """

    def __init__(self, patterns: tuple[FilenamePattern, ...] = DEFAULT_PATTERNS) -> None:
        self._patterns = patterns

    @property
    def patterns(self) -> tuple[FilenamePattern, ...]:
        return self._patterns

    def match(self, filename: str) -> EpisodeGuess | None:
        """Return the season/episode implied by the first matching pattern, or None."""
        result = self.match_with_pattern(filename)
        return result[0] if result else None

    def match_with_pattern(self, filename: str) -> tuple[EpisodeGuess, str] | None:
        """Like match(), also naming the pattern that hit."""
        if not filename:
            return None

        stem = PurePath(filename).stem
        for pattern in self._patterns:
            found = pattern.regex.search(stem)
            if found:
                return pattern.extract(found), pattern.name
        return None


def sanitize_title(title: str) -> str:
    """Strip characters that are not allowed in file names and collapse whitespace."""
    cleaned = _ILLEGAL_FILENAME_CHARS.sub("", title or "")
    return " ".join(cleaned.split()).strip(" .")


def generate_filename(original_path: str, season: int, episode: int, title: str | None) -> str:
    """Build the canonical name "S01E07 - Title.ext", keeping the original extension."""
    ext = PurePath(original_path).suffix
    code = f"S{season:02d}E{episode:02d}"
    clean_title = sanitize_title(title or "")
    if not clean_title:
        return f"{code}{ext}"
    return f"{code} - {clean_title}{ext}"


# Module-level default instance
filename_matcher = FilenameMatcher()
