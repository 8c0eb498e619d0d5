"""
PEM filesystem storage for the certificate lifecycle.

Layout under CERTS_DIR:
  ca.crt / ca.key                       — private root CA (key 0600)
  agents/<agentId>/
      server.key                        — leaf private key (0600)
      server.crt                        — leaf certificate (0644)
      server.pem                        — key + cert bundle (0600)
  live/<domain>/
      fullchain.pem / privkey.pem       — public wildcard certificate
  mongodb.pem                           — wildcard key + chain bundle for the proxy

A certificate directory is replaced as a unit: files are staged in a sibling
temp directory, then swapped in with renames, so readers see either the old
set or the new set and never a mix.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

KEY_MODE = 0o600
CERT_MODE = 0o644


# ─── Public helpers ────────────────────────────────────────────────────────────


def agents_dir(certs_dir: str | Path) -> Path:
    return Path(certs_dir) / "agents"


def agent_dir(certs_dir: str | Path, agent_id: str) -> Path:
    return agents_dir(certs_dir) / agent_id


def live_dir(certs_dir: str | Path, domain: str) -> Path:
    return Path(certs_dir) / "live" / domain


def read_text_or_none(path: Path) -> Optional[str]:
    """Return the file's text, or None if it is missing or unreadable."""
    try:
        return Path(path).read_text()
    except OSError:
        return None


def write_file_set(directory: Path, files: Mapping[str, Tuple[str, int]]) -> None:
    """
    Replace *directory* with exactly *files* ({name: (content, mode)}).

    All files are written and fsynced into a staging directory first.  Any
    failure up to that point leaves the existing directory untouched.
    """
    directory = Path(directory)
    directory.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{directory.name}.", suffix=".staging", dir=str(directory.parent)))

    try:
        for name, (content, mode) in files.items():
            path = staging / name
            fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            # os.open honours the umask; apply the exact bits explicitly
            os.chmod(path, mode)
        os.chmod(staging, 0o755)
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    previous: Optional[Path] = None
    if directory.exists():
        previous = directory.with_name(f".{directory.name}.old-{os.getpid()}-{id(staging)}")
        os.rename(directory, previous)
    try:
        os.rename(staging, directory)
    except OSError:
        if previous is not None:
            os.rename(previous, directory)
        shutil.rmtree(staging, ignore_errors=True)
        raise

    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


def remove_tree(path: Path) -> bool:
    """Delete *path* recursively.  Returns False if it did not exist."""
    path = Path(path)
    if not path.exists():
        return False
    shutil.rmtree(path)
    logger.debug("Removed %s", path)
    return True
