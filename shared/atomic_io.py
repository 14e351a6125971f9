"""
Atomic JSON file publication.

Writers go through a uniquely named temp file in the target directory and
then ``os.replace`` it over the final path, so a reader sees either the old
or the new document and a crash mid-write leaves the previous file intact.
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any, Optional, Union

from shared.errors import PersistenceError

PathLike = Union[str, Path]


def atomic_write_json(path: PathLike, document: Any, file_mode: Optional[int] = None) -> None:
    """Serialize ``document`` and atomically publish it at ``path``."""
    target = Path(path)
    temp_path = target.with_name(f"{target.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        if file_mode is not None:
            os.chmod(temp_path, file_mode)
        os.replace(temp_path, target)
    except (OSError, TypeError, ValueError) as e:
        try:
            temp_path.unlink()
        except OSError:
            # temp file may never have been created
            pass
        raise PersistenceError(
            f"Failed to publish {target.name}",
            details={"path": str(target), "error": str(e)},
        ) from e


def read_json(path: PathLike) -> Any:
    """Read a JSON document. Missing files raise FileNotFoundError, bad JSON ValueError."""
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)
