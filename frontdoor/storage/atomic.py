"""
Atomic file writing with fsync so a crash never leaves a truncated PEM.

Pattern:
  1. Write to a temporary file in the same directory
  2. fsync, then apply the final permission bits
  3. Rename atomically over the destination (POSIX)

Key files are created 0600 from the start (mkstemp), so a private key is
never readable by other users, not even between write and chmod.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional


def stage_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> Path:
    """
    Write *content* to a fsynced temp file beside *path* and return the temp
    path.  Nothing is visible at *path* until the caller os.replace()s it;
    discard_staged() removes temp files that will not be committed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory: rename must not cross filesystems
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
    except Exception:
        discard_staged([Path(temp_path)])
        raise
    return Path(temp_path)


def discard_staged(temp_paths: Iterable[Path]) -> None:
    for temp_path in temp_paths:
        try:
            os.unlink(temp_path)
        except OSError:
            pass


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """
    Atomically write bytes to *path*.

    *mode* sets the final permission bits; when None the file keeps mkstemp's
    owner-only 0600.
    """
    temp_path = stage_bytes(path, content, mode=mode)
    try:
        os.replace(temp_path, path)
    except Exception:
        discard_staged([temp_path])
        raise


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None, encoding: str = "utf-8") -> None:
    """Atomically write text to *path*.  See atomic_write_bytes()."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
