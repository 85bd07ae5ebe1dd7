"""Single-file move primitive shared by execution and undo.

Moves are copy-then-delete so they work across filesystem and volume
boundaries. If the source cannot be removed after a successful copy, the copy
is deleted again (best effort) so the file exists in exactly one place.
"""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Union

from balancer.log import debug, error

PathLike = Union[str, Path]


class FileOpError(OSError):
    pass


class CopyFailedError(FileOpError):
    pass


class RemoveFailedError(FileOpError):
    pass


class DestinationExistsError(FileOpError):
    pass


def _discard_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as cleanup_exc:
        error(f"Could not delete partial copy {path}: {cleanup_exc}")


def move_file(src: PathLike, dest: PathLike, *, overwrite: bool = False) -> None:
    src_path = Path(src)
    dest_path = Path(dest)
    debug(f"Moving file from {src_path} to {dest_path}")

    if not overwrite and dest_path.exists():
        raise DestinationExistsError(f"Destination already exists: {dest_path}")
    existed = dest_path.exists()

    try:
        shutil.copy2(src_path, dest_path)
    except OSError as exc:
        error(f"Failed to copy file from {src_path} to {dest_path}: {exc}")
        if not existed:
            _discard_partial(dest_path)
        raise CopyFailedError(f"Failed to copy from {src_path} to {dest_path}: {exc}") from exc

    try:
        os.remove(src_path)
    except OSError as exc:
        error(f"Failed to remove original file {src_path} after copy: {exc}")
        try:
            os.remove(dest_path)
        except OSError as cleanup_exc:
            error(f"Could not delete orphaned copy {dest_path}: {cleanup_exc}")
        raise RemoveFailedError(f"Failed to remove original file {src_path}: {exc}") from exc


def restore_file(moved_path: PathLike, original_path: PathLike) -> None:
    """Reverse of :func:`move_file`; the original location must be free."""
    move_file(moved_path, original_path)


__all__ = [
    "CopyFailedError",
    "DestinationExistsError",
    "FileOpError",
    "RemoveFailedError",
    "move_file",
    "restore_file",
]
