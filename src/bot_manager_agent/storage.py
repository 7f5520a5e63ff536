"""
Async JSON file helpers shared by the session and context stores.

Reads raise on missing or malformed files so each store can decide how to
degrade. Writes are atomic (temp file + replace) and raise StorageError.
"""

import json
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .errors import StorageError


async def read_json(path: Path) -> Any:
    """Read and decode a JSON file."""
    async with aiofiles.open(path, encoding="utf-8") as f:
        content = await f.read()
    return json.loads(content)


async def write_json(path: Path, data: Any, indent: int | None = 2) -> None:
    """Atomically write ``data`` as pretty-printed JSON."""
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=indent, ensure_ascii=False))
        await aiofiles.os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        raise StorageError(str(path), str(e)) from e


async def remove_file(path: Path) -> bool:
    """Remove a file. Returns False if it did not exist."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageError(str(path), str(e)) from e
    return True


async def list_json_files(directory: Path) -> list[Path]:
    """List ``*.json`` files in a directory, sorted by name. Missing dir -> []."""
    try:
        names = await aiofiles.os.listdir(directory)
    except FileNotFoundError:
        return []
    return [directory / name for name in sorted(names) if name.endswith(".json")]
