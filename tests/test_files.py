"""Tests for path helpers and target pruning."""

import os
from pathlib import Path

import pytest
from conftest import make_file

from media_mirror.files import (
    FileEntry,
    clear_dir,
    has_counterpart,
    is_part,
    make_dir,
    part_path,
    rel_copy,
    remove_if_empty,
    remove_obsolete,
    sp,
    suffix,
    trunk,
)


class TestPathHelpers:
    """Tests for suffix, trunk and re-rooting of paths."""

    def test_suffix_without_dot(self) -> None:
        assert suffix(Path("/music/a.flac")) == "flac"
        assert suffix(Path("/music/README")) == ""

    def test_trunk(self) -> None:
        assert trunk(Path("/music/a.b.flac")) == Path("/music/a.b")
        assert trunk(Path("/music/README")) == Path("/music/README")

    def test_rel_copy(self) -> None:
        assert rel_copy(Path("/src"), Path("/src/a/b.mp3"), Path("/tgt")) == Path(
            "/tgt/a/b.mp3"
        )

    def test_rel_copy_outside_base(self) -> None:
        with pytest.raises(ValueError):
            rel_copy(Path("/src"), Path("/other/b.mp3"), Path("/tgt"))

    def test_sp_shortens(self) -> None:
        assert sp(Path("/a/b/c/d.mp3")) == "." + os.sep + os.path.join("c", "d.mp3")

    def test_part_path_is_hidden_sibling(self) -> None:
        part = part_path(Path("/tgt/a/b.mp3"))
        assert part.parent == Path("/tgt/a")
        assert is_part(part.name)
        assert not is_part("b.mp3")


class TestFileEntry:
    """Tests for FileEntry snapshots."""

    def test_from_path_file(self, tmp_path: Path) -> None:
        path = make_file(tmp_path / "a.mp3", size=42, mtime=1000.0)
        entry = FileEntry.from_path(path)
        assert entry.size == 42
        assert entry.mtime == 1000.0
        assert not entry.is_dir

    def test_from_dir_entry(self, tmp_path: Path) -> None:
        (tmp_path / "sub").mkdir()
        with os.scandir(tmp_path) as it:
            entry = FileEntry.from_dir_entry(next(it))
        assert entry.is_dir
        assert entry.path == tmp_path / "sub"


class TestRemoveObsolete:
    """Tests for deletion of target entries without source counterpart."""

    def test_keeps_converted_counterpart(self, tmp_path: Path) -> None:
        """a.mp3 in the target belongs to a.flac in the source."""
        make_file(tmp_path / "src" / "a.flac")
        make_file(tmp_path / "tgt" / "a.mp3")
        assert remove_obsolete(tmp_path / "src", tmp_path / "tgt", keep=[]) == 0
        assert (tmp_path / "tgt" / "a.mp3").exists()

    def test_deletes_file_without_counterpart(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        make_file(tmp_path / "tgt" / "a.mp3")
        assert remove_obsolete(tmp_path / "src", tmp_path / "tgt", keep=[]) == 1
        assert not (tmp_path / "tgt" / "a.mp3").exists()

    def test_deletes_dir_without_counterpart(self, tmp_path: Path) -> None:
        make_file(tmp_path / "src" / "b")  # a file, not a directory
        make_file(tmp_path / "tgt" / "b" / "c.mp3")
        assert remove_obsolete(tmp_path / "src", tmp_path / "tgt", keep=[]) == 1
        assert not (tmp_path / "tgt" / "b").exists()

    def test_trunk_with_glob_characters(self, tmp_path: Path) -> None:
        make_file(tmp_path / "src" / "[live] a.flac")
        make_file(tmp_path / "tgt" / "[live] a.mp3")
        assert remove_obsolete(tmp_path / "src", tmp_path / "tgt", keep=[]) == 0

    def test_file_without_suffix(self, tmp_path: Path) -> None:
        make_file(tmp_path / "src" / "README")
        make_file(tmp_path / "tgt" / "README")
        assert remove_obsolete(tmp_path / "src", tmp_path / "tgt", keep=[]) == 0

    def test_keep_and_part_files_untouched(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        make_file(tmp_path / "tgt" / "media-mirror.toml")
        make_file(part_path(tmp_path / "tgt" / "x.mp3"))
        removed = remove_obsolete(
            tmp_path / "src", tmp_path / "tgt", keep=["media-mirror.toml"]
        )
        assert removed == 0
        assert (tmp_path / "tgt" / "media-mirror.toml").exists()


class TestClearAndRemove:
    """Tests for clear_dir and remove_if_empty."""

    def test_clear_dir_keeps_named_files(self, tmp_path: Path) -> None:
        make_file(tmp_path / "keep.toml")
        make_file(tmp_path / "a.mp3")
        make_file(tmp_path / "b" / "c.mp3")
        clear_dir(tmp_path, keep=["keep.toml"])
        assert [p.name for p in tmp_path.iterdir()] == ["keep.toml"]

    def test_remove_if_empty(self, tmp_path: Path) -> None:
        empty = make_file(tmp_path / "empty.log", size=0)
        full = make_file(tmp_path / "full.log", size=3)
        assert remove_if_empty(empty)
        assert not remove_if_empty(full)
        assert not remove_if_empty(tmp_path / "missing.log")
        assert not empty.exists()
        assert full.exists()

    def test_has_counterpart_any_suffix(self, tmp_path: Path) -> None:
        make_file(tmp_path / "a.wav")
        assert has_counterpart(tmp_path, "a.opus")
        assert not has_counterpart(tmp_path, "b.opus")


class TestMakeDir:
    """Tests for creating target directories."""

    def test_replaces_files_in_the_way(self, tmp_path: Path) -> None:
        make_file(tmp_path / "b")
        make_dir(tmp_path / "b" / "d" / "e")
        assert (tmp_path / "b" / "d" / "e").is_dir()

    def test_existing_dir_is_kept(self, tmp_path: Path) -> None:
        make_file(tmp_path / "b" / "c.mp3")
        make_dir(tmp_path / "b")
        assert (tmp_path / "b" / "c.mp3").exists()
