"""
Atomic file writes for run summaries.

The payload goes to a temporary file next to the destination and is moved
into place with ``os.replace()``, so readers never see a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = ['atomic_write_json']


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Serialize *data* to *path* as JSON via temp-file + rename.

    Parameters
    ----------
    path:
        Destination file path. The parent directory is created if needed.
    data:
        JSON-serializable object. NumPy scalars are converted with ``float``.
    indent:
        JSON indentation (default 2).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=path.parent, suffix=".tmp", delete=False
        ) as tmp:
            tmp_path = Path(tmp.name)
            json.dump(data, tmp, indent=indent, default=float)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
        raise
