"""Unit tests for directory scanning and renames."""

import pytest

from medialign.core.errors import InputError, RenameError
from medialign.core.filesystem import LocalFileSystem, is_video_file, rename_file, scan_directory


@pytest.fixture
def fs():
    return LocalFileSystem()


@pytest.mark.unit
class TestScanDirectory:
    def test_finds_videos_recursively(self, fs, tmp_path):
        (tmp_path / "Season 1").mkdir()
        (tmp_path / "Season 1" / "b.mkv").write_bytes(b"")
        (tmp_path / "a.MP4").write_bytes(b"")
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "cover.jpg").write_bytes(b"")

        found = scan_directory(fs, tmp_path)

        assert [p.name for p in found] == ["b.mkv", "a.MP4"]  # Sorted by full path

    def test_non_recursive(self, fs, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "deep.mkv").write_bytes(b"")
        (tmp_path / "top.mkv").write_bytes(b"")

        assert [p.name for p in scan_directory(fs, tmp_path, recursive=False)] == ["top.mkv"]

    def test_missing_directory(self, fs, tmp_path):
        with pytest.raises(InputError):
            scan_directory(fs, tmp_path / "missing")

    def test_file_is_not_a_directory(self, fs, tmp_path):
        video = tmp_path / "a.mkv"
        video.write_bytes(b"")
        with pytest.raises(InputError):
            scan_directory(fs, video)

    @pytest.mark.parametrize("name", ["a.mkv", "a.M4V", "a.ts", "a.webm"])
    def test_video_extensions(self, name, tmp_path):
        assert is_video_file(tmp_path / name)

    def test_non_video(self, tmp_path):
        assert not is_video_file(tmp_path / "a.srt")


@pytest.mark.unit
class TestRenameFile:
    def test_rename_in_place(self, fs, tmp_path):
        source = tmp_path / "old.mkv"
        source.write_bytes(b"data")

        target = rename_file(fs, source, "S01E01 - Pilot.mkv")

        assert target == tmp_path / "S01E01 - Pilot.mkv"
        assert target.read_bytes() == b"data"
        assert not source.exists()

    def test_same_name_is_noop(self, fs, tmp_path):
        source = tmp_path / "same.mkv"
        source.write_bytes(b"")
        assert rename_file(fs, source, "same.mkv") == source

    def test_refuses_overwrite(self, fs, tmp_path):
        (tmp_path / "old.mkv").write_bytes(b"1")
        (tmp_path / "new.mkv").write_bytes(b"2")

        with pytest.raises(RenameError):
            rename_file(fs, tmp_path / "old.mkv", "new.mkv")
        assert (tmp_path / "new.mkv").read_bytes() == b"2"

    def test_missing_source(self, fs, tmp_path):
        with pytest.raises(InputError):
            rename_file(fs, tmp_path / "ghost.mkv", "x.mkv")

    def test_os_error_wrapped(self, tmp_path):
        class ReadOnlyFileSystem(LocalFileSystem):
            def rename(self, source, target):
                raise PermissionError("read-only volume")

        source = tmp_path / "old.mkv"
        source.write_bytes(b"")

        with pytest.raises(RenameError, match="read-only volume"):
            rename_file(ReadOnlyFileSystem(), source, "new.mkv")
