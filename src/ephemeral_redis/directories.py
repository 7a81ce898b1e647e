"""Directory preparation for a supervised redis-server.

Resolves, creates and validates the base/data/temp/library directories and
decides which of them are ephemeral. Only ephemeral directories (those
below the platform temp root) are ever wiped, both here before a run and
in ``ephemeral_redis.shutdown`` after it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ephemeral_redis.errors import CleanupError, DirectoryError
from ephemeral_redis.models import DirectorySet, ServerConfig, is_ephemeral
from ephemeral_redis.shutdown import delete_tree

__all__ = [
    "ensure_directory",
    "is_ephemeral",
    "prepare_directories",
    "reset_if_ephemeral",
]

logger = logging.getLogger(__name__)


def ensure_directory(path: str | os.PathLike[str]) -> Path:
    """Create *path* (and parents) if absent and check it is usable.

    Idempotent: an existing valid directory is left as is.

    Args:
        path: Directory to create or verify.

    Returns:
        The absolute path of the directory.

    Raises:
        DirectoryError: If the path is empty, is not a directory, or is
            not both readable and writable.
    """
    if not str(path).strip():
        msg = "Directory path is empty"
        raise DirectoryError(msg)

    directory = Path(os.path.abspath(path))
    if not directory.exists():
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Unable to create directory {directory}: {exc}"
            raise DirectoryError(msg) from exc
        logger.info("Created directory %s", directory)

    if not directory.is_dir():
        msg = f"{directory} is not a directory"
        raise DirectoryError(msg)
    if not os.access(directory, os.R_OK | os.W_OK):
        msg = f"{directory} is not a readable and writable directory"
        raise DirectoryError(msg)
    return directory


def reset_if_ephemeral(path: str | os.PathLike[str]) -> None:
    """Remove any leftover contents of *path* if it is ephemeral.

    Guarantees each run starts from a clean directory even when a previous
    run's teardown did not finish. Non-ephemeral paths are never touched.

    Raises:
        DirectoryError: If leftover contents could not be removed.
    """
    if not is_ephemeral(path):
        return
    if not os.path.lexists(path):
        return
    logger.info("Removing leftover temporary directory %s", path)
    try:
        delete_tree(path)
    except (CleanupError, OSError) as exc:
        msg = f"Unable to reset temporary directory {path}: {exc}"
        raise DirectoryError(msg) from exc


def prepare_directories(config: ServerConfig) -> DirectorySet:
    """Create every directory a run needs and return the resolved set.

    The data directory is reset first when ephemeral. *config* must be
    resolved (see ``ServerConfig.resolved``).

    Raises:
        DirectoryError: If any directory cannot be prepared.
    """
    if config.data_dir is None or config.temp_dir is None:
        msg = "Configuration is not resolved; call ServerConfig.resolved() first"
        raise DirectoryError(msg)

    base = ensure_directory(config.base_dir)
    temp = ensure_directory(config.temp_dir)
    reset_if_ephemeral(config.data_dir)
    data = ensure_directory(config.data_dir)
    library = ensure_directory(config.library_dir) if config.library_dir is not None else None
    return DirectorySet(base=base, data=data, temp=temp, library=library)
