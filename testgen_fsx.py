"""
Small filesystem helpers for the replica/commit pattern.

Commits go through atomic_write: the new bytes land in a temp file in the
same directory and are renamed over the target, so a reader sees either the
old file or the new one, never a torn write.
"""

import os
import tempfile
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def read_text(path: Path) -> str:
    """UTF-8 text with line endings kept as they are on disk."""
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def read_text_if_exists(path: Path) -> str:
    path = Path(path)
    return read_text(path) if path.exists() else ""


def atomic_write(path: Path, text: str):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            os.chmod(tmp, path.stat().st_mode & 0o777)
        os.replace(tmp, path)
    except BaseException:
        remove_quietly(Path(tmp))
        raise


def make_scratch(path: Path, text: str, tag: str = "replica") -> Path:
    """Write `text` to a sibling scratch file that keeps the original suffix.

    Same directory so relative #includes resolve exactly as they would
    from the real file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, scratch = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.{tag}-", suffix=path.suffix)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    return Path(scratch)


def remove_quietly(path: Path):
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove scratch file {path}: {e}")
