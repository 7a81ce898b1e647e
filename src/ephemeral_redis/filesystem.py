"""Platform capabilities needed by the teardown walk.

The recursive delete in ``ephemeral_redis.shutdown`` only needs two
operations from the platform: clearing write protection on an entry and
asking whether an entry is a real directory (never following symlinks).
POSIX and Windows expose write protection differently, so each gets its
own backend; ``default_filesystem()`` picks one from ``os.name``.
"""

from __future__ import annotations

import os
import stat
from typing import Protocol, runtime_checkable


@runtime_checkable
class FileSystemOps(Protocol):
    """Minimal filesystem operations used while deleting a tree."""

    def clear_write_protection(self, path: str) -> None:  # noqa: D102
        ...

    def is_directory(self, path: str) -> bool:  # noqa: D102
        ...


class PosixFileSystem:
    """POSIX permission bits.

    Files get the owner-write bit. Directories additionally get owner
    read and execute so their entries can be listed and unlinked.
    Symlinks are left alone: ``chmod`` would follow them.
    """

    def clear_write_protection(self, path: str) -> None:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            return
        wanted = stat.S_IWUSR
        if stat.S_ISDIR(st.st_mode):
            wanted |= stat.S_IRUSR | stat.S_IXUSR
        mode = stat.S_IMODE(st.st_mode)
        if mode & wanted != wanted:
            os.chmod(path, mode | wanted)

    def is_directory(self, path: str) -> bool:
        try:
            return stat.S_ISDIR(os.lstat(path).st_mode)
        except FileNotFoundError:
            return False


class WindowsFileSystem:
    """Windows read-only attribute.

    ``os.chmod`` on Windows only toggles ``FILE_ATTRIBUTE_READONLY``;
    setting ``S_IWRITE`` clears it.
    """

    def clear_write_protection(self, path: str) -> None:
        st = os.lstat(path)
        attributes = getattr(st, "st_file_attributes", 0)
        if attributes & stat.FILE_ATTRIBUTE_READONLY or not st.st_mode & stat.S_IWRITE:
            os.chmod(path, stat.S_IWRITE)

    def is_directory(self, path: str) -> bool:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return False
        attributes = getattr(st, "st_file_attributes", 0)
        # Junctions and directory symlinks are links, not directories to descend into.
        if attributes & stat.FILE_ATTRIBUTE_REPARSE_POINT:
            return False
        return stat.S_ISDIR(st.st_mode)


def default_filesystem() -> FileSystemOps:
    """Return the backend matching the running platform."""
    if os.name == "nt":
        return WindowsFileSystem()
    return PosixFileSystem()
