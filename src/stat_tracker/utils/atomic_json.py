"""
Atomic JSON file writes.

The document is written to a sibling temp file, flushed to disk, then
swapped into place with ``os.replace`` so readers never observe a
half-written file.
"""

import json
import os
from pathlib import Path
from typing import Any, Optional, Union


def atomic_write_json(path: Union[str, Path], data: Any, indent: Optional[int] = None) -> None:
    """
    Write ``data`` as JSON to ``path`` atomically.

    Args:
        path: Destination file
        data: JSON-serializable object
        indent: Optional indentation for human-readable output

    Raises:
        OSError: If the temp file cannot be written or replaced
        TypeError: If ``data`` is not JSON-serializable
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if tmp.exists():
            tmp.unlink()
        raise


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON document written by :func:`atomic_write_json`."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
