"""Atomic JSON file writes.

The write flow:
1. Write to file.tmp
2. fsync (ensure physical write)
3. rename to final name (atomic operation)

Readers either see the previous document or the new one, never a partial
write. Used for the global config document and every per-instance
``config.json``.

Example:
    from craftstudio.core.utils.atomic_write import atomic_write_json

    atomic_write_json("~/.craftstudio/config.json", {"schemaVersion": 2})
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Union


def atomic_write(file_path: Union[str, Path], content: str) -> Path:
    """Write text content atomically.

    Args:
        file_path: Target file path (``~`` is expanded)
        content: Text to write

    Returns:
        The final file path
    """
    file_path = Path(file_path).expanduser()
    file_path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())

    tmp_path.replace(file_path)
    return file_path


def atomic_write_json(
    file_path: Union[str, Path],
    data: Dict[str, Any],
    indent: int = 2,
) -> Path:
    """Convenience wrapper for atomic JSON write."""
    content = json.dumps(data, indent=indent)
    return atomic_write(file_path, content + "\n")


__all__ = ["atomic_write", "atomic_write_json"]
