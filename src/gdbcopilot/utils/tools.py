"""Locate external tools."""
from __future__ import annotations

import os
import shutil
from typing import Optional


def find_gdb(path: str = "gdb") -> Optional[str]:
    """Return an executable path for *path*, or None when it can't be found."""
    if os.path.sep in path:
        return path if os.path.isfile(path) and os.access(path, os.X_OK) else None
    return shutil.which(path)


def gdb_available(path: str = "gdb") -> bool:
    return find_gdb(path) is not None
