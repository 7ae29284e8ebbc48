"""Whole-file replacement and removal for fact cache entries."""

import os
import tempfile
from pathlib import Path
from typing import Union

from . import IS_WINDOWS

PathLike = Union[str, "os.PathLike[str]"]


def atomic_write(path: PathLike, content: Union[str, bytes], encoding: str = "utf-8") -> None:
    """
    Replace ``path`` with ``content`` in one step.

    The data goes to a temporary file beside the target which is then
    renamed over it; readers see either the old or the new file.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode(encoding)

    fd, scratch = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp_")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        if IS_WINDOWS and target.exists():
            target.unlink()
        os.replace(scratch, target)
    except BaseException:
        Path(scratch).unlink(missing_ok=True)
        raise


def remove_if_exists(path: PathLike) -> bool:
    """Delete ``path``; False when there was nothing to delete."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True
