"""Filesystem helpers for the live module tree."""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def sanitize(value: str) -> str:
    """Replace every run of non-alphanumeric characters with ``_``."""
    return _NON_ALNUM.sub("_", value)


def home_directory() -> Path:
    """Return the user's home, falling back to ``/home/$USER``."""
    try:
        return Path.home()
    except (KeyError, RuntimeError):
        user = os.environ.get("USER")
        if user:
            return Path("/home") / user
        raise


def remove_tree(path: Path) -> None:
    """Remove a file or directory tree; a missing path is not an error."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=False)
    else:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
