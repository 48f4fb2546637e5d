"""Filesystem capability and directory scanning.

The pipeline never touches os/pathlib directly for library files; it goes
through a FileSystem so tests can substitute an in-memory fake.
"""

import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from medialign.core.errors import InputError, RenameError, handle_errors

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = frozenset(
    {
        ".mp4",
        ".mkv",
        ".avi",
        ".mov",
        ".wmv",
        ".flv",
        ".webm",
        ".m4v",
        ".mpg",
        ".mpeg",
        ".3gp",
        ".ts",
    }
)


class FileSystem(Protocol):
    """Filesystem operations the pipeline relies on."""

    def exists(self, path: Path) -> bool: ...

    def is_dir(self, path: Path) -> bool: ...

    def iter_files(self, root: Path, recursive: bool = True) -> Iterable[Path]: ...

    def rename(self, source: Path, target: Path) -> None: ...

    def unlink(self, path: Path) -> None: ...


class LocalFileSystem:
    """FileSystem backed by the real disk."""

    def exists(self, path: Path) -> bool:
        return path.exists()

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def iter_files(self, root: Path, recursive: bool = True) -> Iterable[Path]:
        if not recursive:
            yield from (p for p in root.iterdir() if p.is_file())
            return
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                yield Path(dirpath) / name

    def rename(self, source: Path, target: Path) -> None:
        source.rename(target)

    def unlink(self, path: Path) -> None:
        path.unlink(missing_ok=True)


def is_video_file(path: Path) -> bool:
    return path.suffix.lower() in VIDEO_EXTENSIONS


def scan_directory(fs: FileSystem, root: Path, recursive: bool = True) -> list[Path]:
    """Return every video file under root, sorted by path.

    Raises:
        InputError: If root does not exist or is not a directory
    """
    if not fs.exists(root) or not fs.is_dir(root):
        raise InputError(f"Directory does not exist: {root}")

    videos = sorted(p for p in fs.iter_files(root, recursive) if is_video_file(p))
    logger.info(f"Found {len(videos)} video files in {root}")
    return videos


@handle_errors(
    error_types=(OSError,),
    default_message="Failed to rename file",
    wrap_as=RenameError,
)
def rename_file(fs: FileSystem, source: Path, new_name: str) -> Path:
    """Rename a file within its own directory and return the new path.

    Raises:
        InputError: If the source file is missing
        RenameError: If the target already exists or the OS refuses the rename
    """
    if not fs.exists(source):
        raise InputError(f"File does not exist: {source}")

    target = source.with_name(new_name)
    if target == source:
        return source
    if fs.exists(target):
        raise RenameError(f"Refusing to overwrite existing file: {target}")

    fs.rename(source, target)
    logger.info(f"Renamed {source.name} -> {target.name}")
    return target
