"""Crash-safe file replacement helpers.

Writers create a temporary file next to the destination, flush and fsync it,
then `os.replace` it over the destination. A crash at any point leaves either
the previous file or the new one, never a mix of both.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def fsync_directory(path: PathLike) -> None:
    """Flush a directory entry so a completed rename survives power loss (POSIX only)."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(str(path), os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_text(path: PathLike, text: str, mode: Optional[int] = None, prefix: str = ".tmp_") -> None:
    """Atomically replace `path` with `text`.

    Args:
        path: Destination file.
        text: Full file contents.
        mode: Optional permission bits applied before the file becomes visible.
        prefix: Prefix of the temporary file created in the destination directory.
    """
    dest = Path(path)
    dir_name = str(dest.parent) or "."
    fd, tmp_path = tempfile.mkstemp(prefix=prefix, dir=dir_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmpf:
            tmpf.write(text)
            tmpf.flush()
            os.fsync(tmpf.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, dest)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError as err:
                logger.warning(f"Could not remove temporary file {tmp_path}: {err}")
    fsync_directory(dir_name)


def atomic_write_json(path: PathLike, payload: Any, mode: Optional[int] = None, prefix: str = ".tmp_") -> None:
    """Atomically replace `path` with `payload` serialized as JSON."""
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2), mode=mode, prefix=prefix)
