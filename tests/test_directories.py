"""Tests for directory preparation in ``ephemeral_redis.directories``."""

from __future__ import annotations

import os
from pathlib import Path

from ephemeral_redis.directories import (
    ensure_directory,
    prepare_directories,
    reset_if_ephemeral,
)
from ephemeral_redis.errors import DirectoryError
import pytest

from tests.conftest import make_config, posix_only

# ===========================================================================
# ensure_directory
# ===========================================================================


@pytest.mark.unit
class TestEnsureDirectory:
    """ensure_directory creates, validates and is idempotent."""

    def test_creates_missing_directory_with_parents(self, tmp_path: Path) -> None:
        """Nested missing directories are all created."""
        target = tmp_path / "a" / "b" / "c"
        result = ensure_directory(target)
        assert result.is_dir()
        assert result == target

    def test_returns_absolute_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Relative input yields an absolute result."""
        monkeypatch.chdir(tmp_path)
        result = ensure_directory("rel")
        assert result.is_absolute()
        assert result == tmp_path / "rel"

    def test_idempotent(self, tmp_path: Path) -> None:
        """Calling twice keeps the directory and its contents."""
        target = tmp_path / "data"
        ensure_directory(target)
        (target / "keep.txt").write_text("x")
        ensure_directory(target)
        assert (target / "keep.txt").read_text() == "x"

    def test_file_at_path_raises(self, tmp_path: Path) -> None:
        """A regular file where the directory should be is an error."""
        target = tmp_path / "file"
        target.write_text("not a dir")
        with pytest.raises(DirectoryError, match="not a directory"):
            ensure_directory(target)

    def test_file_as_parent_raises(self, tmp_path: Path) -> None:
        """Creation below a regular file fails with DirectoryError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        with pytest.raises(DirectoryError):
            ensure_directory(blocker / "child")

    @pytest.mark.parametrize("path", ["", "   "])
    def test_empty_path_raises(self, path: str) -> None:
        """Empty paths are rejected before touching the filesystem."""
        with pytest.raises(DirectoryError, match="empty"):
            ensure_directory(path)

    @posix_only
    def test_unwritable_directory_raises(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A directory the process cannot write to is rejected."""
        target = tmp_path / "ro"
        target.mkdir()
        monkeypatch.setattr(
            "ephemeral_redis.directories.os.access", lambda path, mode: False
        )
        with pytest.raises(DirectoryError, match="readable and writable"):
            ensure_directory(target)


# ===========================================================================
# reset_if_ephemeral
# ===========================================================================


@pytest.mark.unit
class TestResetIfEphemeral:
    """reset_if_ephemeral wipes only directories under the temp root."""

    def test_wipes_ephemeral_directory(self, temp_root: Path) -> None:
        """Leftovers from a previous run are removed."""
        data = temp_root / "data"
        (data / "nested").mkdir(parents=True)
        (data / "nested" / "dump.rdb").write_text("old")
        reset_if_ephemeral(data)
        assert not data.exists()

    def test_leaves_non_ephemeral_directory(self, outside_dir: Path) -> None:
        """User-designated persistent directories are never touched."""
        data = outside_dir / "data"
        data.mkdir()
        (data / "dump.rdb").write_text("precious")
        reset_if_ephemeral(data)
        assert (data / "dump.rdb").read_text() == "precious"

    def test_missing_directory_is_noop(self, temp_root: Path) -> None:
        """Nothing happens for a path that does not exist."""
        reset_if_ephemeral(temp_root / "missing")
        assert not (temp_root / "missing").exists()

    def test_cleanup_failure_becomes_directory_error(
        self, temp_root: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A failed wipe surfaces as DirectoryError."""
        data = temp_root / "data"
        data.mkdir()
        (data / "locked").write_text("x")
        real_unlink = os.unlink

        def failing_unlink(path: str, *args: object, **kwargs: object) -> None:
            if os.path.basename(path) == "locked":
                raise PermissionError(13, "Permission denied", path)
            real_unlink(path, *args, **kwargs)  # type: ignore[arg-type]

        monkeypatch.setattr(os, "unlink", failing_unlink)
        with pytest.raises(DirectoryError, match="Unable to reset"):
            reset_if_ephemeral(data)


# ===========================================================================
# prepare_directories
# ===========================================================================


@pytest.mark.unit
class TestPrepareDirectories:
    """prepare_directories builds the full DirectorySet."""

    def test_creates_all_directories(self, temp_root: Path) -> None:
        """Base, temp and data exist afterwards; library stays unset."""
        config = make_config(base_dir=temp_root / "base").resolved()
        dirs = prepare_directories(config)
        assert dirs.base.is_dir()
        assert dirs.temp.is_dir()
        assert dirs.data.is_dir()
        assert dirs.library is None
        assert dirs.data == config.data_dir

    def test_library_directory_created(self, temp_root: Path) -> None:
        """A configured library directory is created too."""
        config = make_config(
            base_dir=temp_root / "base", library_dir=temp_root / "lib"
        ).resolved()
        dirs = prepare_directories(config)
        assert dirs.library == temp_root / "lib"
        assert dirs.library.is_dir()

    def test_ephemeral_data_dir_starts_clean(self, temp_root: Path) -> None:
        """Stale files in an ephemeral data dir are removed."""
        data = temp_root / "data"
        data.mkdir()
        (data / "stale.aof").write_text("old")
        config = make_config(base_dir=temp_root / "base", data_dir=data).resolved()
        dirs = prepare_directories(config)
        assert dirs.data.is_dir()
        assert list(dirs.data.iterdir()) == []

    def test_persistent_data_dir_kept(self, temp_root: Path, outside_dir: Path) -> None:
        """A data dir outside the temp root keeps its contents."""
        data = outside_dir / "data"
        data.mkdir()
        (data / "dump.rdb").write_text("keep")
        config = make_config(base_dir=temp_root / "base", data_dir=data).resolved()
        prepare_directories(config)
        assert (data / "dump.rdb").read_text() == "keep"

    def test_unresolved_config_rejected(self) -> None:
        """Unresolved configs lack data/temp paths."""
        with pytest.raises(DirectoryError, match="not resolved"):
            prepare_directories(make_config())

    def test_invalid_data_dir_raises(self, temp_root: Path, outside_dir: Path) -> None:
        """A file occupying the data dir path aborts preparation."""
        blocker = outside_dir / "data"
        blocker.write_text("file")
        config = make_config(base_dir=temp_root / "base", data_dir=blocker).resolved()
        with pytest.raises(DirectoryError):
            prepare_directories(config)
