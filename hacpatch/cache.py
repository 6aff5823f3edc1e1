import os
import os.path as op
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Optional, Union

from hacpatch.utils import move_file

logger = getLogger(__name__)
logger.addHandler(NullHandler())


class Cache:
    """Flat store of resolved tool executables, keyed by file name."""

    def __init__(self, directory: Union[str, os.PathLike[str]]):
        self.dir = Path(directory)

    def get(self, filename: str) -> Optional[Path]:
        path = self.dir / filename
        if path.is_file():
            return path
        return None

    def store_bytes(self, data: bytes, filename: str) -> Path:
        """Write ``data`` into the cache under ``filename``."""
        dest = self.dir / filename
        logger.info(f"Storing {len(data)} bytes to {dest}")
        os.makedirs(self.dir, exist_ok=True)
        with open(dest, "wb") as f:
            f.write(data)
        return dest

    def store_path(self, path: Union[str, os.PathLike[str]], filename: Optional[str] = None) -> Path:
        """Move the file at ``path`` into the cache, optionally renaming it."""
        dest = self.dir / (filename or op.basename(path))
        logger.info(f"Caching {path} as {dest}")
        os.makedirs(self.dir, exist_ok=True)
        if Path(path) != dest:
            move_file(path, dest)
        return dest
